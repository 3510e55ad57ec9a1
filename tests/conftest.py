"""
Pytest configuration and shared fixtures.

Settings need DATABASE_URL at import time; a default is provided here
before any messenger imports, and the settings cache is cleared so the
test values are used.
"""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from messenger.config import get_settings
get_settings.cache_clear()

from messenger.storage import Store, create_db_engine


@pytest.fixture
def store():
    """Store on a fresh in-memory SQLite database with the schema applied."""
    engine = create_db_engine("sqlite://")
    store = Store(engine)
    store.bootstrap()
    yield store
    engine.dispose()


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client running the full app against a per-test SQLite file."""
    from fastapi.testclient import TestClient
    from messenger.main import app

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'messenger.db'}")
    get_settings.cache_clear()

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()

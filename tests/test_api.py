"""
Tests for the HTTP API.

Tests cover:
- Health probes
- User registration and lookup (201, 409, 404, 422)
- Sending, listing and fetching messages
- Batch sends and the batch size limit
- Request IDs and metrics
"""

import pytest

from messenger.config import get_settings


def register(client, user_id: str, username: str):
    response = client.post("/users", json={"id": user_id, "username": username})
    assert response.status_code == 201
    return response


@pytest.fixture
def users_client(client):
    """Client with alice (u1) and bob (u2) registered."""
    register(client, "u1", "alice")
    register(client, "u2", "bob")
    return client


class TestHealth:
    """Test liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestUsers:
    """Test /users routes."""

    def test_register(self, client):
        response = client.post("/users", json={"id": "u1", "username": "alice"})

        assert response.status_code == 201
        assert response.json() == {"status": "ok", "count": 1}

    def test_register_twice_conflicts(self, client):
        register(client, "u1", "alice")

        response = client.post("/users", json={"id": "u1", "username": "alice"})
        assert response.status_code == 409
        assert response.json() == {"detail": "user already exists"}

    def test_register_taken_username_conflicts(self, client):
        register(client, "u1", "alice")

        response = client.post("/users", json={"id": "u2", "username": "alice"})
        assert response.status_code == 409

    def test_register_empty_username_rejected(self, client):
        response = client.post("/users", json={"id": "u1", "username": ""})
        assert response.status_code == 422

    def test_register_missing_id_rejected(self, client):
        response = client.post("/users", json={"username": "alice"})
        assert response.status_code == 422

    def test_find_user(self, users_client):
        response = users_client.get("/users/alice")

        assert response.status_code == 200
        assert response.json() == {"id": "u1", "username": "alice"}

    def test_find_unknown_user(self, users_client):
        response = users_client.get("/users/mallory")

        assert response.status_code == 404
        assert response.json() == {"detail": "unknown user"}


class TestMessages:
    """Test sending, listing and fetching messages."""

    def test_send_list_get(self, users_client):
        response = users_client.post("/users/alice/messages", json={"sender": "u2", "payload": "hi"})
        assert response.status_code == 201

        response = users_client.get("/users/u1/messages")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        header = data["data"][0]
        assert header["sender"] == "bob"
        assert "payload" not in header
        assert "sent_at" in header

        response = users_client.get(f"/messages/{header['id']}")
        assert response.status_code == 200
        message = response.json()
        assert message["id"] == header["id"]
        assert message["sender"] == "bob"
        assert message["payload"] == "hi"

    def test_list_empty(self, users_client):
        response = users_client.get("/users/u1/messages")

        assert response.status_code == 200
        assert response.json() == {"data": [], "count": 0}

    def test_send_to_unknown_recipient(self, users_client):
        response = users_client.post("/users/mallory/messages", json={"sender": "u2", "payload": "hi"})

        assert response.status_code == 404
        assert response.json() == {"detail": "unknown recipient"}

    def test_send_payload_too_long(self, users_client):
        response = users_client.post(
            "/users/alice/messages",
            json={"sender": "u2", "payload": "x" * 4097}
        )
        assert response.status_code == 422

    def test_get_unknown_message(self, users_client):
        response = users_client.get("/messages/999")

        assert response.status_code == 404
        assert response.json() == {"detail": "unknown message"}

    def test_get_message_non_integer_id(self, users_client):
        response = users_client.get("/messages/abc")
        assert response.status_code == 422


class TestBatch:
    """Test POST /messages/batch."""

    def test_batch_send(self, users_client):
        body = {
            "messages": [
                {"sender": "u2", "recipient": "u1", "payload": "one", "sent_at": "2025-01-15T10:00:00Z"},
                {"sender": "u2", "recipient": "u1", "payload": "two", "sent_at": "2025-01-15T10:01:00Z"},
                {"sender": "u1", "recipient": "u2", "payload": "three", "sent_at": "2025-01-15T10:02:00Z"},
            ]
        }
        response = users_client.post("/messages/batch", json=body)

        assert response.status_code == 201
        assert response.json() == {"status": "ok", "count": 3}
        assert users_client.get("/users/u1/messages").json()["count"] == 2
        assert users_client.get("/users/u2/messages").json()["count"] == 1

    def test_batch_keeps_timestamps(self, users_client):
        body = {
            "messages": [
                {"sender": "u2", "recipient": "u1", "payload": "old", "sent_at": "2025-01-15T10:00:00Z"},
            ]
        }
        users_client.post("/messages/batch", json=body)

        header = users_client.get("/users/u1/messages").json()["data"][0]
        assert header["sent_at"].startswith("2025-01-15T10:00:00")

    def test_empty_batch(self, users_client):
        response = users_client.post("/messages/batch", json={"messages": []})

        assert response.status_code == 201
        assert response.json() == {"status": "ok", "count": 0}

    def test_batch_requires_recipient(self, users_client):
        body = {"messages": [{"sender": "u2", "payload": "lost"}]}
        response = users_client.post("/messages/batch", json=body)

        assert response.status_code == 422
        assert users_client.get("/users/u1/messages").json()["count"] == 0

    def test_batch_size_limit(self, users_client, monkeypatch):
        monkeypatch.setenv("MAX_BATCH_SIZE", "2")
        get_settings.cache_clear()

        body = {
            "messages": [
                {"sender": "u2", "recipient": "u1", "payload": str(i)} for i in range(3)
            ]
        }
        response = users_client.post("/messages/batch", json=body)

        assert response.status_code == 422
        assert response.json() == {"detail": "batch exceeds 2 messages"}
        assert users_client.get("/users/u1/messages").json()["count"] == 0


class TestObservability:
    """Test request IDs and metrics exposition."""

    def test_response_includes_request_id_header(self, client):
        response = client.get("/health/live")
        assert "x-request-id" in response.headers

    def test_metrics_count_operations(self, users_client):
        users_client.post("/users", json={"id": "u1", "username": "alice"})

        response = users_client.get("/metrics")
        assert response.status_code == 200
        body = response.text
        assert 'message_operations_total{operation="register",result="created"}' in body
        assert 'message_operations_total{operation="register",result="conflict"}' in body
        assert "http_requests_total" in body

    def test_metrics_use_route_templates(self, users_client):
        users_client.get("/users/alice")

        body = users_client.get("/metrics").text
        assert 'path="/users/{username}"' in body

    def test_unmatched_paths_share_one_label(self, client):
        client.get("/no/such/path")
        client.get("/another/missing/path")

        body = client.get("/metrics").text
        assert 'path="unmatched"' in body
        assert "/no/such/path" not in body
        assert "/another/missing/path" not in body

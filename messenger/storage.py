import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, create_engine, event, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql.elements import TextClause

from messenger.models import Base, Message, User
from messenger.schemas import MessageDetail, MessageHeader, NewMessage

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class StoreError(Exception):
    """Base class for store errors callers are expected to handle."""


class NotFoundError(StoreError):
    """A lookup matched no row."""


class ConflictError(StoreError):
    """A write violated a uniqueness constraint."""


# =============================================================================
# Integrity Violation Classifiers
# =============================================================================

IntegrityClassifier = Callable[[Exception], bool]


def default_integrity_violation(exc: Exception) -> bool:
    """Match any error SQLAlchemy wraps as IntegrityError."""
    return isinstance(exc, IntegrityError)


def postgres_integrity_violation(exc: Exception) -> bool:
    """
    Match PostgreSQL SQLSTATE class 23 (integrity constraint violation).

    psycopg2 exposes the code as pgcode, psycopg 3 as sqlstate.
    """
    orig = getattr(exc, "orig", exc)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return bool(code) and code.startswith("23")


def integrity_classifier_for(engine: Engine) -> IntegrityClassifier:
    """Pick the integrity classifier matching the engine's dialect."""
    if engine.dialect.name == "postgresql":
        return postgres_integrity_violation
    return default_integrity_violation


# =============================================================================
# Engine
# =============================================================================

def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite needs check_same_thread=False to be used from FastAPI's worker
    threads; in-memory SQLite additionally shares one connection so every
    session sees the same database. The sqlite3 driver commits DDL on its
    own, so SQLite engines emit BEGIN themselves to keep schema changes
    inside the surrounding transaction.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=False, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
    if url.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# =============================================================================
# Batch Insert Builder
# =============================================================================

BATCH_COLUMNS = ("sender", "recipient", "payload", "sent_at")


def _as_utc(value: datetime) -> datetime:
    """
    Convert to UTC; naive values are taken as UTC already.
    SQLite stores only the wall-clock fields, so offsets must be resolved first.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_batch_insert(messages: Sequence[NewMessage]) -> Tuple[TextClause, dict]:
    """
    Build one multi-row INSERT for the given messages.

    Message i contributes placeholders p(4i+1)..p(4i+4), in BATCH_COLUMNS
    order, grouped as one VALUES tuple. Timestamps are converted to UTC;
    messages without sent_at are stamped with the current server time.

    Returns:
        Tuple of (statement, params) ready for Connection.execute()

    Raises:
        ValueError: if messages is empty or the parameter count is off
    """
    if not messages:
        raise ValueError("batch insert needs at least one message")

    columns = Message.__table__.c
    now = datetime.now(timezone.utc)

    groups: List[str] = []
    binds = []
    params = {}
    for i, msg in enumerate(messages):
        base = i * len(BATCH_COLUMNS)
        sent_at = _as_utc(msg.sent_at) if msg.sent_at else now
        values = (msg.sender, msg.recipient, msg.payload, sent_at)
        placeholders = []
        for offset, (column, value) in enumerate(zip(BATCH_COLUMNS, values), start=1):
            name = f"p{base + offset}"
            placeholders.append(f":{name}")
            binds.append(bindparam(name, type_=columns[column].type))
            params[name] = value
        groups.append("(" + ", ".join(placeholders) + ")")

    expected = len(BATCH_COLUMNS) * len(messages)
    if len(params) != expected:
        raise ValueError(f"batch insert bound {len(params)} parameters, expected {expected}")

    sql = (
        f"INSERT INTO {Message.__tablename__} ({', '.join(BATCH_COLUMNS)}) "
        f"VALUES {', '.join(groups)}"
    )
    return text(sql).bindparams(*binds), params


# =============================================================================
# Store
# =============================================================================

class Store:
    """
    Persistence for users and direct messages.

    The engine is supplied by the caller and owned by it; the store keeps
    no state between calls beyond the engine and its session factory.
    """

    def __init__(self, engine: Engine, is_integrity_violation: Optional[IntegrityClassifier] = None):
        self.engine = engine
        self.is_integrity_violation = is_integrity_violation or integrity_classifier_for(engine)
        self._session_factory = sessionmaker(bind=engine, autoflush=False)

    def bootstrap(self) -> None:
        """
        Create the users and messages tables and their indexes if absent.
        Runs in a single transaction, rolled back on any failure.
        """
        logger.debug(f"Bootstrapping schema on {self.engine.url.render_as_string(hide_password=True)}")
        try:
            with self.engine.begin() as conn:
                Base.metadata.create_all(bind=conn)
        except SQLAlchemyError as e:
            logger.error(f"Failed to bootstrap schema: {e}")
            raise
        logger.info("Database schema bootstrapped")

    def check_health(self) -> bool:
        """
        Check that the database is reachable and the schema is applied.

        Returns:
            True if DB is healthy and both tables exist, False otherwise.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                inspector = inspect(conn)
                missing = [
                    table for table in (User.__tablename__, Message.__tablename__)
                    if not inspector.has_table(table)
                ]
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def register_user(self, user_id: str, username: str) -> None:
        """
        Register a new user.

        Raises:
            ConflictError: if the id or the username is already taken
        """
        logger.info(f"Registering user: id={user_id}, username={username}")
        try:
            with self._session_factory.begin() as db:
                db.add(User(id=user_id, username=username))
        except SQLAlchemyError as e:
            if self.is_integrity_violation(e):
                logger.info(f"User already exists: id={user_id}, username={username}")
                raise ConflictError(f"user {user_id!r} or username {username!r} already exists") from e
            raise

    def find_recipient(self, username: str) -> str:
        """
        Resolve a username to its user id.

        Raises:
            NotFoundError: if no user has that username
        """
        logger.debug(f"Resolving username: {username}")
        with self._session_factory() as db:
            user_id = db.query(User.id).filter(User.username == username).scalar()

        if user_id is None:
            raise NotFoundError(f"no user with username {username!r}")
        return user_id

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def list_messages(self, user_id: str) -> List[MessageHeader]:
        """
        List headers of all messages addressed to user_id.

        The sender is reported by username. No ordering is applied.
        """
        logger.debug(f"Listing messages for recipient: {user_id}")
        with self._session_factory() as db:
            rows = (
                db.query(Message.id, User.username.label("sender"), Message.sent_at)
                .join(User, Message.sender == User.id)
                .filter(Message.recipient == user_id)
                .all()
            )
            headers = [MessageHeader.model_validate(row) for row in rows]

        logger.debug(f"Found {len(headers)} messages for recipient: {user_id}")
        return headers

    def get_message(self, message_id: int) -> MessageDetail:
        """
        Fetch one message with its payload.

        Raises:
            NotFoundError: if no message has that id
        """
        logger.debug(f"Fetching message: {message_id}")
        with self._session_factory() as db:
            row = (
                db.query(
                    Message.id,
                    User.username.label("sender"),
                    Message.payload,
                    Message.sent_at,
                )
                .join(User, Message.sender == User.id)
                .filter(Message.id == message_id)
                .first()
            )
            if row is None:
                raise NotFoundError(f"no message with id {message_id}")
            return MessageDetail.model_validate(row)

    def save_message(self, recipient_id: str, message: NewMessage) -> None:
        """
        Store one message for recipient_id, stamped with the server time.
        The message's own recipient and sent_at are ignored.
        """
        sent_at = datetime.now(timezone.utc)
        logger.info(f"Saving message: sender={message.sender}, recipient={recipient_id}")
        with self._session_factory.begin() as db:
            db.add(Message(
                sender=message.sender,
                recipient=recipient_id,
                payload=message.payload,
                sent_at=sent_at,
            ))

    def save_messages(self, *messages: NewMessage) -> None:
        """
        Store all messages with one INSERT statement.

        Either every row is written or none is. Each message keeps its own
        recipient and sent_at. An empty call is a no-op.
        """
        if not messages:
            logger.debug("Empty batch, nothing to save")
            return

        statement, params = build_batch_insert(messages)
        logger.info(f"Saving batch of {len(messages)} messages")
        with self.engine.begin() as conn:
            conn.execute(statement, params)

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status
from starlette.middleware.gzip import GZipMiddleware

from messenger.config import get_settings
from messenger.compression import GzipRequestMiddleware
from messenger.storage import ConflictError, NotFoundError, Store, create_db_engine
from messenger.logging_utils import setup_logging, RequestLoggingMiddleware, log_request_data
from messenger.metrics import record_message_operation, get_metrics, get_metrics_content_type
from messenger.schemas import (
    BatchSendRequest,
    ErrorResponse,
    HealthResponse,
    MessageDetail,
    MessagesListResponse,
    NewMessage,
    RegisterUserRequest,
    SendMessageRequest,
    StatusResponse,
    UserResponse,
)


settings = get_settings()

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the engine and store, bootstrap the schema
    - Shutdown: dispose of the engine's connection pool
    """
    engine = create_db_engine(get_settings().DATABASE_URL)
    store = Store(engine)
    store.bootstrap()
    app.state.store = store
    yield
    engine.dispose()


app = FastAPI(
    title="Messenger API",
    description="Direct messages between registered users",
    version="1.0.0",
    lifespan=lifespan,
)

# Last added runs first: logging wraps compression
app.add_middleware(GzipRequestMiddleware, max_size=settings.MAX_REQUEST_BODY_SIZE)
app.add_middleware(GZipMiddleware, minimum_size=settings.GZIP_MINIMUM_SIZE)
app.add_middleware(RequestLoggingMiddleware)


def get_store(request: Request) -> Store:
    """Dependency returning the store built at startup."""
    return request.app.state.store


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, store: Store = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, 503 otherwise.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# User Routes
# =============================================================================

@app.post(
    "/users",
    response_model=StatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "User already exists"}},
)
async def register_user(
    request: Request,
    body: RegisterUserRequest,
    store: Store = Depends(get_store),
) -> StatusResponse:
    """Register a user under a caller-supplied id and a unique username."""
    try:
        store.register_user(body.id, body.username)
    except ConflictError:
        record_message_operation("register", "conflict")
        log_request_data(request, user_id=body.id, result="conflict")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="user already exists"
        )

    record_message_operation("register", "created")
    log_request_data(request, user_id=body.id, result="created")
    return StatusResponse(status="ok", count=1)


@app.get(
    "/users/{username}",
    response_model=UserResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
)
async def find_user(username: str, store: Store = Depends(get_store)) -> UserResponse:
    """Resolve a username to the user's id."""
    try:
        user_id = store.find_recipient(username)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown user")

    return UserResponse(id=user_id, username=username)


@app.get("/users/{user_id}/messages", response_model=MessagesListResponse)
async def list_messages(
    request: Request,
    user_id: str,
    store: Store = Depends(get_store),
) -> MessagesListResponse:
    """
    List headers (id, sender username, sent_at) of messages addressed to
    the user. Payloads are fetched one at a time via /messages/{id}.
    """
    headers = store.list_messages(user_id)
    log_request_data(request, user_id=user_id, count=len(headers))
    return MessagesListResponse(data=headers, count=len(headers))


@app.post(
    "/users/{username}/messages",
    response_model=StatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse, "description": "Unknown recipient"}},
)
async def send_message(
    request: Request,
    username: str,
    body: SendMessageRequest,
    store: Store = Depends(get_store),
) -> StatusResponse:
    """Send a message to the user registered under username."""
    try:
        recipient_id = store.find_recipient(username)
    except NotFoundError:
        record_message_operation("send", "not_found")
        log_request_data(request, result="not_found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown recipient")

    store.save_message(recipient_id, NewMessage(sender=body.sender, payload=body.payload))

    record_message_operation("send", "created")
    log_request_data(request, user_id=recipient_id, result="created")
    return StatusResponse(status="ok", count=1)


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/messages/batch",
    response_model=StatusResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"description": "Validation error or batch too large"}},
)
async def send_messages(
    request: Request,
    body: BatchSendRequest,
    store: Store = Depends(get_store),
) -> StatusResponse:
    """
    Store several messages in one statement. Each message carries its own
    recipient id and sent_at; the batch is written entirely or not at all.
    """
    max_batch_size = get_settings().MAX_BATCH_SIZE
    if len(body.messages) > max_batch_size:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"batch exceeds {max_batch_size} messages"
        )

    store.save_messages(*body.messages)

    record_message_operation("batch_send", "created")
    log_request_data(request, count=len(body.messages), result="created")
    return StatusResponse(status="ok", count=len(body.messages))


@app.get(
    "/messages/{message_id}",
    response_model=MessageDetail,
    responses={404: {"model": ErrorResponse, "description": "Unknown message"}},
)
async def get_message(
    request: Request,
    message_id: int,
    store: Store = Depends(get_store),
) -> MessageDetail:
    """Fetch one message including its payload."""
    try:
        message = store.get_message(message_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown message")

    log_request_data(request, message_id=message_id)
    return message


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

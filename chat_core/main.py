from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from chat_core import settings
from chat_core.clients.profile_client import HttpProfileClient
from chat_core.clients.push_client import HttpPushClient
from chat_core.database import AsyncSessionLocal, close_db, get_db, init_db
from chat_core.errors import (
    Forbidden,
    InvalidContent,
    InvalidRequest,
    MessagingError,
    NotFound,
    RateLimited,
    TransientStoreError,
)
from chat_core.logging_config import get_logger, setup_logging
from chat_core.realtime.hub import RealtimeHub
from chat_core.routers.conversations import router as conversations_router
from chat_core.routers.messages import router as messages_router
from chat_core.routers.realtime import router as realtime_router
from chat_core.services.messaging_service import MessagingService
from chat_core.services.rate_limiter import SenderRateLimiter

if not settings.COMMIT_HASH and settings.ENV_IS_PROD:
    raise ValueError("COMMIT_HASH is required for production environments")

logger = get_logger(__name__)


def build_messaging_service() -> MessagingService:
    """Wire the service against the configured database and collaborators."""
    return MessagingService(
        session_factory=AsyncSessionLocal,
        hub=RealtimeHub(max_queue=settings.SUBSCRIPTION_QUEUE_SIZE),
        profiles=HttpProfileClient(
            settings.PROFILE_SERVICE_URL, settings.PROFILE_SERVICE_API_KEY
        ),
        push=HttpPushClient(settings.PUSH_NOTIFY_URL, settings.PUSH_NOTIFY_API_KEY),
        rate_limiter=SenderRateLimiter(settings.RATE_LIMIT_PER_MINUTE),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown."""
    # Startup
    setup_logging()
    await init_db()
    if getattr(app.state, "messaging_service", None) is None:
        app.state.messaging_service = build_messaging_service()
    logger.info("startup", environment=settings.ENV, version=settings.COMMIT_HASH)
    yield
    # Shutdown
    await app.state.messaging_service.aclose()
    await close_db()


app = FastAPI(
    title="Chat Core",
    description="Conversations, messages, unread counters and live updates",
    version=settings.COMMIT_HASH or "dev",
    lifespan=lifespan,
)

# Include routers
app.include_router(
    conversations_router, prefix="/api/conversations", tags=["conversations"]
)
app.include_router(messages_router, prefix="/api/messages", tags=["messages"])
app.include_router(realtime_router, prefix="/api/realtime", tags=["realtime"])


_STATUS_CODES = [
    (InvalidContent, 422),
    (NotFound, 404),
    (Forbidden, 403),
    (RateLimited, 429),
    (TransientStoreError, 503),
    (InvalidRequest, 400),
]


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Translate typed messaging failures into HTTP responses."""
    status_code = next(
        (code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)), 500
    )
    headers: Dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, round(exc.retry_after)))
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=headers,
    )


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)) -> Dict[str, str]:
    """Health check endpoint with database connectivity."""
    try:
        # Test database connection
        result = await db.execute(text("SELECT 1"))
        db_status = "connected" if result.scalar() == 1 else "error"
    except Exception:
        db_status = "disconnected"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "environment": str(settings.ENV),
        "version": str(settings.COMMIT_HASH),
    }


# If run directly, start the server
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.APP_ADDR, port=settings.APP_PORT)

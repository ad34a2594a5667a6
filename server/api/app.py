"""FastAPI application setup."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from api.routes import conversations, messages, realtime
from api.routes.health import router as health_router
from api.schemas.response_schemas import ErrorResponse
from config.logging_config import setup_logging
from config.settings import settings
from core.dependencies import init_dependencies, shutdown_dependencies
from core.errors import ChatError
from database.client import init_supabase

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # STARTUP
    logger.info("Initializing database connection...")
    init_supabase()
    init_dependencies()
    logger.info("Application started")
    yield
    # SHUTDOWN
    await shutdown_dependencies()
    logger.info("Application shut down")


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map service errors to their HTTP status with a uniform body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    body = ErrorResponse(error=exc.code, detail=exc.message, retryable=exc.retryable)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Chat Sync API",
        description="Realtime message synchronization: fan-out, receipts and presence",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS: never combine allow_credentials=True with allow_origins=["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChatError, chat_error_handler)

    app.include_router(health_router, tags=["Health"])
    app.include_router(conversations.router, prefix="/conversations", tags=["Conversations"])
    app.include_router(messages.router, prefix="/messages", tags=["Messages"])
    app.include_router(realtime.router, tags=["Realtime"])

    logger.info("FastAPI application created")
    return app

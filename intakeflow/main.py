"""
intakeflow - conversational intake pipeline for social direct messages.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from intakeflow.config import get_settings
from intakeflow.api.router import api_router
from intakeflow.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("intakeflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("intakeflow starting up (env=%s)", settings.app_env)

    # Dead letters and stored fields must never be written in plaintext in production
    if not settings.encryption_key:
        if settings.app_env == "production":
            raise RuntimeError("ENCRYPTION_KEY is required in production")
        logger.warning(
            "ENCRYPTION_KEY not set - collected fields are stored unencrypted and "
            "dead-lettering is disabled. Generate a Fernet key for production."
        )
    if not settings.webhook_app_secret:
        logger.warning("WEBHOOK_APP_SECRET not set - inbound webhook signatures are not verified.")
    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set - dead-letter admin API is disabled.")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from intakeflow.workers.webhook_worker import WebhookWorkerPool
    pool = WebhookWorkerPool()
    await pool.start()
    app.state.worker_pool = pool

    yield

    # Graceful shutdown - let in-flight jobs finish, then release connections
    logger.info("intakeflow shutting down - draining %d workers...", pool.concurrency)
    await pool.stop()

    from intakeflow.utils.redis_client import close_redis
    from intakeflow.database import dispose_engine
    await close_redis()
    await dispose_engine()
    logger.info("intakeflow shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="intakeflow",
        description="Conversational intake pipeline: direct messages to booked appointments",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()

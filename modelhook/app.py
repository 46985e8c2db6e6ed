"""FastAPI application for the modelhook service."""

# init dotenv
from dotenv import load_dotenv
load_dotenv(override=True)

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Response
from pydantic import BaseModel

from modelhook import __version__
from modelhook.config import Settings, load_settings
from modelhook.core.errors import ConfigurationError, ModelHookError
from modelhook.core.fastapi import global_exception_handler, modelhook_error_handler
from modelhook.core.logging import configure_logging
from modelhook.delivery.metrics import metrics
from modelhook.dependencies import build_services
from modelhook.ingress.middleware import RateLimitMiddleware
from modelhook.ingress.ratelimit import SlidingWindowRateLimiter
from modelhook.ops.routes import cleanup_router, health_router, recovery_router
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.registry import TargetRegistry
from modelhook.subscriptions.routes import notifications_router
from modelhook.subscriptions.routes import router as subscriptions_router

logger = structlog.get_logger("modelhook")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging, check secrets and ensure tables exist."""
    settings: Settings = app.state.settings
    services = app.state.services

    configure_logging(settings.log_level)
    logger.info("Starting modelhook", version=__version__)

    if not settings.api_secret:
        raise ConfigurationError("MODELHOOK_API_SECRET must be set")

    services.store.create_tables()

    yield

    logger.info("Shutting down modelhook")
    if services.dispatcher is not None:
        await services.dispatcher.aclose()


class HealthResponse(BaseModel):
    """Liveness response model."""

    status: str
    version: str


def create_app(
    settings: Settings | None = None,
    store: SubscriptionStore | None = None,
    registry: TargetRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    services = build_services(settings, store=store, registry=registry, transport=transport)

    app = FastAPI(
        title="modelhook",
        description="Webhook subscriptions and signed delivery for domain model changes",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.signer = services.signer

    app.add_middleware(
        RateLimitMiddleware,
        limiter=SlidingWindowRateLimiter(settings.rate_limit_max_attempts, settings.rate_limit_window_seconds),
        enabled=settings.rate_limit_enabled,
    )
    app.add_exception_handler(ModelHookError, modelhook_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health/", response_model=HealthResponse)
    async def liveness() -> HealthResponse:
        """Health check endpoint for readiness probes."""
        return HealthResponse(status="up", version=__version__)

    @app.get("/metrics")
    async def prometheus_metrics() -> Response:
        return Response(content=metrics.get_metrics_text(), media_type="text/plain; version=0.0.4")

    for router in (subscriptions_router, notifications_router, health_router, recovery_router, cleanup_router):
        app.include_router(router, prefix="/api")

    return app


app = create_app()

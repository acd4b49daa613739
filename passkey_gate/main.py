from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from passkey_gate.api.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from passkey_gate.api.v1 import health, passkey
from passkey_gate.core import config
from passkey_gate.core.config import Settings
from passkey_gate.core.errors import GatewayError, gateway_error_handler, validation_error_handler
from passkey_gate.core.logging import setup_logging
from passkey_gate.core.metrics import get_metrics
from passkey_gate.db.redis import RedisClient
from passkey_gate.db.session import Database
from passkey_gate.services.identity import IdentityBackend, build_identity_backend
from passkey_gate.services.rate_limiter import RateLimiter, RateLimitStore, RedisRateLimitStore
from passkey_gate.services.webauthn import WebAuthnVerifier

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    settings = app.state.settings

    # Startup
    logger.info("Starting passkey gateway", version=settings.VERSION, environment=settings.ENVIRONMENT)

    await app.state.database.init(create_tables=settings.DATABASE_AUTO_CREATE)
    if app.state.redis is not None:
        await app.state.redis.init_pool()

    logger.info("Application startup complete.", rp_id=settings.rp_id, origins=sorted(settings.allowed_origins))
    yield

    # Shutdown
    logger.info("Shutting down passkey gateway")

    await app.state.identity.close()
    if app.state.redis is not None:
        await app.state.redis.close_pool()
    await app.state.database.close()
    logger.info("Application shutdown complete.")


def create_app(
    settings: Optional[Settings] = None,
    *,
    identity: Optional[IdentityBackend] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
) -> FastAPI:
    """
    Build the application.

    ``identity`` and ``rate_limit_store`` replace the backends that would
    otherwise be chosen from ``settings``.
    """
    settings = settings or config.settings

    setup_logging(settings.LOG_LEVEL, json_logs=settings.log_json)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.database = Database(settings.DATABASE_URL)
    app.state.identity = identity or build_identity_backend(settings)
    app.state.verifier = WebAuthnVerifier.from_settings(settings)

    app.state.redis = None
    if rate_limit_store is None and settings.RATE_LIMIT_BACKEND == "redis":
        if not settings.REDIS_URL:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        app.state.redis = RedisClient(settings.REDIS_URL)
        rate_limit_store = RedisRateLimitStore(app.state.redis)
    app.state.rate_limiter = RateLimiter.from_settings(settings, store=rate_limit_store)

    # Errors
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Middleware (last added runs first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Prometheus metrics
    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app)
    app.add_api_route("/metrics", get_metrics, methods=["GET"], include_in_schema=False)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(passkey.router, prefix=f"{settings.API_PREFIX}/passkey", tags=["passkey"])

    return app


app = create_app()

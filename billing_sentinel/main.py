"""
Billing Sentinel - Stripe webhook trust boundary.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from billing_sentinel.config import get_settings
from billing_sentinel.api.router import api_router
from billing_sentinel.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("billing_sentinel")


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
    """Build services, start the dispatch worker, and drain everything on shutdown."""
    settings = get_settings()
    logger.info("Billing Sentinel starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.admin_api_token:
        logger.warning("ADMIN_API_TOKEN not set - admin endpoints are disabled.")
    if not settings.encryption_key:
        logger.warning(
            "ENCRYPTION_KEY not set - high-assurance audit entries fall back to the "
            "general store and keys cannot be persisted. Generate a Fernet key for production."
        )
    if not settings.payments_api_base_url:
        logger.warning(
            "PAYMENTS_API_BASE_URL not set - payment and subscription events will fail "
            "and be released for redelivery until it is configured."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
                release=f"{settings.app_name}@{settings.app_version}",
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    from billing_sentinel.database import get_session_factory, init_models, dispose_engine
    from billing_sentinel.services.container import build_services

    if settings.database_url.startswith("sqlite"):
        # Local development; production schemas come from Alembic
        await init_models()

    services = build_services(settings, get_session_factory())
    app.state.services = services

    # Fail fast on a missing webhook secret instead of 500ing every delivery
    from billing_sentinel.exceptions import KeyManagementError
    from billing_sentinel.services.key_store import KeyPurpose
    try:
        services.keys.resolve(KeyPurpose.WEBHOOK)
    except KeyManagementError as e:
        logger.error("Webhook signing secret unavailable: %s", str(e))

    services.worker.start()

    yield

    logger.info("Billing Sentinel shutting down - draining dispatch queue...")
    await services.shutdown()
    await dispose_engine()
    logger.info("Billing Sentinel shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(
        settings.log_level,
        json_output=settings.log_json,
        service=settings.app_name,
        env=settings.app_env,
        version=settings.app_version,
    )

    application = FastAPI(
        title="Billing Sentinel",
        description="Stripe webhook verification, dispatch, audit and incident escalation",
        version=settings.app_version,
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    if origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
            allow_headers=["Content-Type", "X-Admin-Token", "X-Correlation-ID"],
        )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()

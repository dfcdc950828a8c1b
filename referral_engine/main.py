"""
Referral Engine - referral attribution and commission service.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from referral_engine.config import get_settings
from referral_engine.api.router import api_router
from referral_engine.errors import ReferralError
from referral_engine.utils.logging import (
    configure_structured_logging,
    correlation_scope,
)

logger = logging.getLogger("referral_engine")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        with correlation_scope(request.headers.get("X-Correlation-ID")) as cid:
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def referral_error_handler(request: Request, exc: ReferralError) -> JSONResponse:
    """Render every domain error as {success, error, code}."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message,
                     extra={"error_code": exc.code})
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message,
                    extra={"error_code": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Referral engine starting up (env=%s)", settings.app_env)

    if not settings.auth_jwt_secret:
        logger.warning(
            "AUTH_JWT_SECRET not set - falling back to APP_SECRET_KEY. "
            "Set the identity provider's JWT secret for production."
        )
    if not settings.stripe_secret_key:
        logger.info("Stripe not configured - using configured tier prices")

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

    yield

    logger.info("Referral engine shutting down")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level, environment=settings.app_env)

    application = FastAPI(
        title="Referral Engine",
        description="Referral attribution and partner commissions",
        version="1.0.0",
        lifespan=lifespan,
    )

    extra_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", settings.app_base_url, *extra_origins],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.add_exception_handler(ReferralError, referral_error_handler)

    application.include_router(api_router)

    return application


app = create_app()

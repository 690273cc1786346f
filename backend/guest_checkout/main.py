"""FastAPI application entry point.

Creates and configures the application, including:
- Exception handlers for API errors
- Storefront pages and the API v1 router
- Failed token attempt tracker on app.state
- Health check endpoint
"""

import logging

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from guest_checkout.api import storefront
from guest_checkout.api.v1.router import router as v1_router
from guest_checkout.core.config import Settings, settings
from guest_checkout.core.errors import APIError
from guest_checkout.core.rate_limiting import limiter, rate_limit_exceeded_handler
from guest_checkout.core.responses import ErrorDetail, ErrorResponse
from guest_checkout.services.failed_attempts import FailedAttemptTracker

logger = structlog.get_logger()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses.

    Headers added:
    - X-Frame-Options: Prevents clickjacking attacks
    - X-Content-Type-Options: Prevents MIME sniffing
    - Referrer-Policy: Controls referrer information leakage
    - Cache-Control: Pages carry order contents and session cookies
    - Content-Security-Policy: Responses are JSON and load nothing
    - Strict-Transport-Security: Forces HTTPS (production only)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers.setdefault(
            "Referrer-Policy", "strict-origin-when-cross-origin"
        )

        # Never cache: cart contents are per guest session
        response.headers["Cache-Control"] = "no-store, max-age=0"

        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )

        # HSTS only in production (assumes HTTPS via reverse proxy)
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Handle custom API errors.

    Args:
        request: The incoming request.
        exc: The APIError that was raised.

    Returns:
        JSONResponse with error envelope and appropriate status code.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                details=exc.details,
            )
        ).model_dump(),
    )


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors to the standard envelope.

    Args:
        request: The incoming request.
        exc: The RequestValidationError from Pydantic.

    Returns:
        JSONResponse with VALIDATION_ERROR code and field-level details.
    """
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="VALIDATION_ERROR",
                message="Request validation failed",
                details=[
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            )
        ).model_dump(),
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions.

    Returns 500 INTERNAL_ERROR without exposing details. Logs for debugging.

    Args:
        request: The incoming request.
        exc: The unhandled exception.

    Returns:
        JSONResponse with generic error message (500).
    """
    logger.exception("Unhandled exception", exc_info=exc, path=str(request.url.path))

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="INTERNAL_ERROR",
                message="An unexpected error occurred",
            )
        ).model_dump(),
    )


def configure_logging(level: str) -> None:
    """Set the structlog filtering level from LOG_LEVEL."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )
    logging.basicConfig(level=level.upper())


def create_app(app_settings: Settings = settings) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings used for startup wiring.

    Returns:
        Configured FastAPI application instance.
    """
    configure_logging(app_settings.log_level)
    if app_settings.encryption_key_is_insecure:
        logger.warning(
            "Guest payment links are signed with the fallback key; "
            "set WICKET_GUEST_PAYMENT_ENCRYPTION_KEY or SECURE_AUTH_KEY and AUTH_KEY"
        )

    app = FastAPI(
        title="Wicket Guest Checkout",
        version="1.0.0",
        description="Secure, expiring guest payment links for shop orders",
    )

    app.add_middleware(SecurityHeadersMiddleware)

    # Order matters: specific handlers first, then catch-all
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.state.limiter = limiter
    app.state.failed_attempts = FailedAttemptTracker(
        max_attempts=app_settings.max_failed_token_attempts,
        window_minutes=app_settings.failed_attempt_window_minutes,
        exempt_prefixes=tuple(app_settings.failed_attempt_exempt_ip_prefixes),
    )

    app.include_router(v1_router, prefix="/api/v1")
    app.include_router(storefront.router)

    @app.get("/health")
    def health_check() -> dict:
        """Health check endpoint for monitoring.

        Returns:
            {"status": "healthy"} if service is running.
        """
        return {"status": "healthy"}

    return app


# Create the application instance
# Used by uvicorn: uvicorn guest_checkout.main:app
app = create_app()

"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.api.dependencies import close_http_client
from app.api.routes import entitlements, health, receipts
from app.config import settings
from app.core.request_id import get_request_id
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.rate_limit import get_rate_limit_exceeded_handler, limiter
from app.middleware.security import SecurityHeadersMiddleware, setup_compression, setup_cors
from app.utils.exceptions import (
    AuthenticationError,
    EntitlementServiceException,
    ReceiptValidationError,
    StoreError,
    ValidationError,
)
from app.utils.logging_config import setup_logging

# Setup logging
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Entitlement API",
    description="Receipt validation and subscription entitlement service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, get_rate_limit_exceeded_handler())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with detailed messages."""
    request_id = get_request_id()

    logger.warning(
        f"Validation error: {str(exc)}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": "Validation error",
            "detail": exc.errors(),
            "request_id": request_id,
        },
    )


@app.exception_handler(EntitlementServiceException)
async def service_exception_handler(request: Request, exc: EntitlementServiceException) -> JSONResponse:
    """Handle custom service exceptions."""
    request_id = get_request_id()

    if isinstance(exc, AuthenticationError):
        status_code = status.HTTP_401_UNAUTHORIZED
        error_message = "Authentication failed"
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
        error_message = str(exc)
    elif isinstance(exc, ReceiptValidationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_400_BAD_REQUEST
        error_message = exc.code
    elif isinstance(exc, StoreError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        error_message = "Entitlement store unavailable"
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        error_message = "Internal server error"

    logger.error(
        f"Exception: {error_message}",
        extra={"request_id": request_id, "exception": str(exc)},
        exc_info=status_code >= 500,
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error_message,
            "request_id": request_id,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = get_request_id()

    logger.error(
        f"Unexpected exception: {str(exc)}",
        extra={"request_id": request_id},
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
            "request_id": request_id,
        },
    )


# Add middleware (order matters!)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
setup_compression(app)
setup_cors(app)

app.include_router(health.router)
app.include_router(receipts.router)
app.include_router(entitlements.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info("Entitlement API starting up...")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Entitlement store: {settings.entitlement_backend}")
    if not settings.apple_shared_secret:
        logger.warning("APPLE_SHARED_SECRET not set; legacy iOS receipts will fail")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    logger.info("Entitlement API shutting down...")
    await close_http_client()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Entitlement API",
        "version": "1.0.0",
        "docs": "/docs",
    }

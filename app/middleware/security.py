"""Security headers and CORS middleware."""

from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.config import settings

ALLOWED_HEADERS = ["Authorization", "Content-Type", "X-Request-ID", "X-Client-Info"]


def setup_cors(app: ASGIApp) -> None:
    """Setup CORS middleware."""
    origins = settings.cors_origins_list

    # Credentials are only allowed with an explicit origin list
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=ALLOWED_HEADERS,
    )


def setup_compression(app: ASGIApp) -> None:
    """Setup GZip compression middleware."""
    app.add_middleware(GZipMiddleware, minimum_size=1000)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers."""

    async def dispatch(self, request, call_next):
        """Add security headers to response."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Entitlement data is per-user
        response.headers.setdefault("Cache-Control", "no-store")

        return response

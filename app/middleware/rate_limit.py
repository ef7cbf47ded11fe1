"""Rate limiting using slowapi."""

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address

from app.config import settings


def get_caller_key(request: Request) -> str:
    """
    Key requests by bearer token, falling back to the client address.

    Tokens rotate hourly, which is longer than any window used here.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and len(auth_header) > 7:
        return auth_header[7:]
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_caller_key,
    default_limits=[f"{settings.rate_limit_per_hour}/hour"],
    storage_uri="memory://",
)


def get_rate_limit_exceeded_handler():
    """Get rate limit exceeded handler."""
    return _rate_limit_exceeded_handler

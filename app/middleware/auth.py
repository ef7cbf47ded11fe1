"""Firebase ID token authentication."""

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth

from app.services.subscriptions.firebase_admin_init import verify_id_token
from app.utils.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_subscriber(
    authorization: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Verify the Firebase ID token from the Authorization header.

    The returned UID is the only subscriber ID the caller may act on.

    Returns:
        Authenticated subscriber ID

    Raises:
        AuthenticationError: If the token is missing or invalid
    """
    if authorization is None or not authorization.credentials:
        raise AuthenticationError("Missing or invalid Authorization header")

    try:
        return verify_id_token(authorization.credentials)
    except (firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
            firebase_auth.RevokedIdTokenError, ValueError) as e:
        logger.warning(f"Firebase token verification failed: {e}")
        raise AuthenticationError("Invalid Firebase token") from e


def require_same_subscriber(caller_id: str, subscriber_id: str) -> None:
    """Raise 403 unless the caller is acting on their own entitlement."""
    if caller_id != subscriber_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="subscriberId does not match authenticated user",
        )

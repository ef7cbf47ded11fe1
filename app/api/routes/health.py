"""Health check endpoint."""

import logging
from typing import Any, Dict

from fastapi import APIRouter

from app.config import settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check() -> Dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Health status
    """
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check() -> Dict[str, Any]:
    """
    Readiness check for Cloud Run.
    Reports which billing authorities have the configuration they need.
    """
    return {
        "status": "ready",
        "dependencies": {
            "apple": bool(settings.apple_shared_secret),
            "apple_signed_transactions": bool(settings.apple_root_cert_path_list),
            "google_play": bool(
                settings.google_play_package_name
                and (settings.google_service_account_file or settings.google_service_account_json)
            ),
            "entitlement_store": settings.entitlement_backend,
        },
    }

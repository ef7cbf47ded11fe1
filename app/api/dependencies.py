"""Shared API dependencies."""

import logging
from functools import lru_cache
from typing import Optional

import httpx

from app.config import settings
from app.services.subscriptions.entitlement_store import (
    EntitlementStore,
    FirestoreEntitlementStore,
    InMemoryEntitlementStore,
)
from app.services.subscriptions.firebase_admin_init import get_firestore_client
from app.services.subscriptions.validator import ReceiptValidator, build_receipt_validator

logger = logging.getLogger(__name__)

_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Shared client for billing authority calls."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(timeout=settings.authority_timeout_seconds)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


@lru_cache(maxsize=1)
def get_entitlement_store() -> EntitlementStore:
    """Get the configured entitlement store."""
    if settings.entitlement_backend == "memory":
        logger.warning("Using in-memory entitlement store; records are lost on restart")
        return InMemoryEntitlementStore()
    return FirestoreEntitlementStore(get_firestore_client(), collection=settings.entitlements_collection)


@lru_cache(maxsize=1)
def get_receipt_validator() -> ReceiptValidator:
    """Get receipt validator service instance."""
    return build_receipt_validator(settings, get_http_client())

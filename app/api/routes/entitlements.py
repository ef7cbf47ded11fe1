"""Entitlement read endpoint used to gate premium features."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response

from app.api.dependencies import get_entitlement_store
from app.middleware.auth import get_current_subscriber, require_same_subscriber
from app.models.entitlement import EntitlementView
from app.services.subscriptions.entitlement_store import EntitlementStore
from app.utils.validators import validate_subscriber_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("/{subscriber_id}", response_model=Optional[EntitlementView])
async def get_entitlement(
    subscriber_id: str,
    response: Response,
    caller_id: str = Depends(get_current_subscriber),
    store: EntitlementStore = Depends(get_entitlement_store),
) -> Optional[EntitlementView]:
    """
    Get the caller's current entitlement.

    ``isActive`` is computed against ``expiryTime`` at read time.
    Returns null when the subscriber never purchased.
    """
    subscriber_id = validate_subscriber_id(subscriber_id)
    require_same_subscriber(caller_id, subscriber_id)

    response.headers["Cache-Control"] = "no-store"

    record = await store.get(subscriber_id)
    if record is None:
        return None
    return EntitlementView.from_record(record)

"""Shared logic for validating a receipt and writing the subscriber's entitlement.

Only the backend may write entitlements, and only after the billing
authority confirmed the receipt.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from app.models.entitlement import EntitlementRecord, Platform
from app.services.subscriptions.entitlement_store import EntitlementStore, UpsertOutcome
from app.services.subscriptions.purchase import ValidatedPurchase
from app.services.subscriptions.validator import ReceiptValidator

logger = logging.getLogger(__name__)


async def validate_and_record(
    validator: ReceiptValidator,
    store: EntitlementStore,
    subscriber_id: str,
    receipt: str,
    product_id: str,
    platform: Platform,
    declared_transaction_id: Optional[str] = None,
) -> Tuple[ValidatedPurchase, UpsertOutcome]:
    """
    Validate ``receipt`` and upsert the subscriber's entitlement.

    A validation failure propagates before the store is touched.

    Returns:
        The validated purchase and the store outcome (``written`` is False
        when a record with a later expiry was already stored)
    """
    purchase = await validator.validate(receipt, product_id, platform)

    record = EntitlementRecord(
        subscriberId=subscriber_id,
        productId=product_id,
        plan=validator.plan_for(product_id),
        platform=platform,
        environment=purchase.environment,
        transactionId=purchase.transaction_id or declared_transaction_id,
        purchaseTime=purchase.purchase_time,
        expiryTime=purchase.expiry_time,
        isActive=datetime.now(timezone.utc) < purchase.expiry_time,
        rawReceipt=receipt,
    )

    outcome = await store.upsert(record)
    if outcome.written:
        logger.info(
            f"Entitlement updated for subscriber {subscriber_id}: plan={record.plan}",
            extra={"subscriber_id": subscriber_id, "expiry_time": record.expiryTime.isoformat()},
        )
    else:
        logger.info(
            f"Kept newer entitlement for subscriber {subscriber_id}",
            extra={
                "subscriber_id": subscriber_id,
                "stored_expiry_time": outcome.record.expiryTime.isoformat(),
                "candidate_expiry_time": record.expiryTime.isoformat(),
            },
        )
    return purchase, outcome

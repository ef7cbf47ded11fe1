"""Normalized result of a successful authority validation."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.utils.exceptions import MalformedReceipt


@dataclass(frozen=True)
class ValidatedPurchase:
    purchase_time: datetime
    expiry_time: datetime
    transaction_id: Optional[str] = None
    environment: str = "production"


def build_validated_purchase(
    purchase_time: Optional[datetime],
    expiry_time: Optional[datetime],
    transaction_id: Optional[str],
    environment: str,
) -> ValidatedPurchase:
    """Check authority-supplied dates and wrap them.

    Raises MalformedReceipt when either date is missing or the expiry does not
    come after the purchase.
    """
    if purchase_time is None or expiry_time is None:
        raise MalformedReceipt("Authority response is missing purchase or expiry time")
    if expiry_time <= purchase_time:
        raise MalformedReceipt("Authority expiry time is not after purchase time")
    return ValidatedPurchase(
        purchase_time=purchase_time,
        expiry_time=expiry_time,
        transaction_id=str(transaction_id) if transaction_id else None,
        environment=environment,
    )

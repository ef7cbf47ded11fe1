"""Contract of the native store billing SDK as seen by the orchestrator.

Purchase results are not return values: the SDK reports them later as a
``PurchaseEvent`` carrying the attempt ID it was started with.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol


class BillingClientError(Exception):
    """Raised by billing clients when the native SDK call itself fails."""

    pass


class PurchaseEventKind(str, Enum):
    PURCHASED = "purchased"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class PurchaseEvent:
    attempt_id: str
    kind: PurchaseEventKind
    receipt: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class NativePurchase:
    """One entry of the store's purchase history."""

    receipt: str
    product_id: str
    transaction_id: Optional[str] = None
    purchase_time: Optional[datetime] = None


class BillingClient(Protocol):
    async def start_purchase(self, product_id: str, attempt_id: str) -> None:
        """Open the native purchase sheet; the outcome arrives as a PurchaseEvent."""
        ...

    async def query_purchase_history(self) -> List[NativePurchase]:
        ...

    async def acknowledge(self, transaction_id: str) -> None:
        """Finish the transaction so the store stops redelivering it."""
        ...

"""Entitlement and receipt-validation Pydantic models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    """Store whose billing authority validated the receipt."""

    IOS = "ios"
    ANDROID = "android"


class Plan(str, Enum):
    """Subscription tier."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class EntitlementRecord(BaseModel):
    """Current premium-access grant for one subscriber.

    One record per subscriber, overwritten on every successful validation.
    Only the backend writes it.
    """

    model_config = ConfigDict(use_enum_values=True)

    subscriberId: str = Field(..., description="Opaque subscriber identifier (document ID)")
    productId: str = Field(..., description="Store product identifier of the plan")
    plan: Plan = Field(..., description="Plan derived from productId")
    platform: Platform = Field(..., description="Store that validated the receipt")
    environment: str = Field("production", description="'production' or 'sandbox'")
    transactionId: Optional[str] = Field(None, description="Authority-issued transaction ID")
    purchaseTime: datetime = Field(..., description="Authority-issued purchase instant (UTC)")
    expiryTime: datetime = Field(..., description="Authority-issued expiry instant (UTC)")
    isActive: bool = Field(..., description="Write-time snapshot of now < expiryTime")
    rawReceipt: Optional[str] = Field(None, description="Opaque receipt kept for audit")
    createdAt: Optional[datetime] = Field(None, description="First successful validation")
    updatedAt: Optional[datetime] = Field(None, description="Last successful write")

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Liveness as readers must compute it: the flag alone can be stale."""
        now = now or datetime.now(timezone.utc)
        return self.isActive and now < self.expiryTime


class EntitlementView(BaseModel):
    """What the app needs to gate premium features."""

    plan: Plan
    isActive: bool
    expiryTime: datetime

    @classmethod
    def from_record(cls, record: EntitlementRecord, now: Optional[datetime] = None) -> "EntitlementView":
        """Project a stored record, computing liveness at read time."""
        return cls(plan=record.plan, isActive=record.is_live(now), expiryTime=record.expiryTime)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.isActive and now < self.expiryTime


class ValidateReceiptRequest(BaseModel):
    """Body of POST /api/receipts/validate."""

    receipt: str = Field(..., min_length=1, description="Receipt blob, JWS or purchase token")
    productId: str = Field(..., min_length=1)
    subscriberId: str = Field(..., min_length=1)
    platform: Platform
    transactionId: Optional[str] = None


class ValidateReceiptResponse(BaseModel):
    """Result of a receipt validation.

    ``purchaseTime`` and ``expiryTime`` are epoch milliseconds.
    """

    success: bool
    purchaseTime: Optional[int] = None
    expiryTime: Optional[int] = None
    error: Optional[str] = None

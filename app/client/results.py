"""Typed outcomes returned to the UI by purchase and restore."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.models.entitlement import EntitlementView


class PurchaseErrorCode(str, Enum):
    MALFORMED_RECEIPT = "MalformedReceipt"
    AUTHORITY_REJECTED = "AuthorityRejected"
    PRODUCT_MISMATCH = "ProductMismatch"
    AUTHORITY_UNAVAILABLE = "AuthorityUnavailable"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    USER_CANCELLED = "UserCancelled"
    NO_PURCHASES_FOUND = "NoPurchasesFound"
    NATIVE_ERROR = "NativeError"
    # ConfigurationError and other server faults, never shown verbatim
    SERVER_ERROR = "ServerError"


RETRYABLE_ERRORS = {
    PurchaseErrorCode.AUTHORITY_UNAVAILABLE,
    PurchaseErrorCode.SERVER_ERROR,
    PurchaseErrorCode.NATIVE_ERROR,
}

# No error dialog for these
SILENT_ERRORS = {
    PurchaseErrorCode.USER_CANCELLED,
    PurchaseErrorCode.NO_PURCHASES_FOUND,
    PurchaseErrorCode.ALREADY_IN_PROGRESS,
}


@dataclass(frozen=True)
class PurchaseResult:
    success: bool
    entitlement: Optional[EntitlementView] = None
    error: Optional[PurchaseErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, entitlement: Optional[EntitlementView]) -> "PurchaseResult":
        return cls(success=True, entitlement=entitlement)

    @classmethod
    def failed(cls, error: PurchaseErrorCode, message: Optional[str] = None) -> "PurchaseResult":
        return cls(success=False, error=error, message=message)

    @property
    def should_alert(self) -> bool:
        return self.error is not None and self.error not in SILENT_ERRORS

    @property
    def retryable(self) -> bool:
        return self.error in RETRYABLE_ERRORS


class ValidatorCallError(Exception):
    """The validation endpoint did not confirm the receipt."""

    def __init__(self, code: PurchaseErrorCode, message: str = ""):
        super().__init__(message or code.value)
        self.code = code

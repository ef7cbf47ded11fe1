"""Pydantic models."""

from app.models.entitlement import (
    EntitlementRecord,
    EntitlementView,
    Plan,
    Platform,
    ValidateReceiptRequest,
    ValidateReceiptResponse,
)

__all__ = [
    "EntitlementRecord",
    "EntitlementView",
    "Plan",
    "Platform",
    "ValidateReceiptRequest",
    "ValidateReceiptResponse",
]

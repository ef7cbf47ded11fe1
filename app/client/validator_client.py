"""HTTP client for the receipt validation and entitlement endpoints."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from app.client.results import PurchaseErrorCode, ValidatorCallError
from app.models.entitlement import EntitlementView, Platform, ValidateReceiptRequest
from app.utils.validators import parse_epoch_millis

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class ServerValidation:
    purchase_time: datetime
    expiry_time: datetime


def _error_code(value: Optional[str]) -> PurchaseErrorCode:
    try:
        code = PurchaseErrorCode(value)
    except ValueError:
        return PurchaseErrorCode.SERVER_ERROR
    return code


class ReceiptValidatorClient:
    """Talks to the validation service over an authenticated channel."""

    def __init__(self, client: httpx.AsyncClient, token_provider: TokenProvider):
        self.client = client
        self.token_provider = token_provider

    async def _headers(self) -> dict:
        return {"Authorization": f"Bearer {await self.token_provider()}"}

    async def validate(
        self,
        receipt: str,
        product_id: str,
        subscriber_id: str,
        platform: Platform,
        transaction_id: Optional[str] = None,
    ) -> ServerValidation:
        """
        Ask the server to validate a receipt and record the entitlement.

        Raises:
            ValidatorCallError: With the server's error code, or
                AUTHORITY_UNAVAILABLE when the server could not be reached
        """
        body = ValidateReceiptRequest(
            receipt=receipt,
            productId=product_id,
            subscriberId=subscriber_id,
            platform=platform,
            transactionId=transaction_id,
        )
        try:
            response = await self.client.post(
                "/api/receipts/validate",
                json=body.model_dump(mode="json"),
                headers=await self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Validation request failed: {e}")
            raise ValidatorCallError(PurchaseErrorCode.AUTHORITY_UNAVAILABLE, str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and data.get("success"):
            purchase_time = parse_epoch_millis(data.get("purchaseTime"))
            expiry_time = parse_epoch_millis(data.get("expiryTime"))
            if purchase_time is None or expiry_time is None:
                raise ValidatorCallError(PurchaseErrorCode.SERVER_ERROR, "Validation response has no dates")
            return ServerValidation(purchase_time=purchase_time, expiry_time=expiry_time)

        if response.status_code == 429 or (response.status_code >= 500 and not data.get("error")):
            raise ValidatorCallError(PurchaseErrorCode.AUTHORITY_UNAVAILABLE, f"HTTP {response.status_code}")

        code = _error_code(data.get("error"))
        logger.info(f"Server rejected receipt: {code.value}", extra={"status_code": response.status_code})
        raise ValidatorCallError(code, f"HTTP {response.status_code}")

    async def fetch_entitlement(self, subscriber_id: str) -> Optional[EntitlementView]:
        """
        Read the subscriber's entitlement from the server.

        Raises:
            ValidatorCallError: If the server cannot be read
        """
        try:
            response = await self.client.get(
                f"/api/entitlements/{subscriber_id}",
                headers=await self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ValidatorCallError(PurchaseErrorCode.AUTHORITY_UNAVAILABLE, str(e)) from e

        try:
            data = response.json()
            if data is None:
                return None
            return EntitlementView.model_validate(data)
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Unreadable entitlement response: {e}")
            raise ValidatorCallError(PurchaseErrorCode.SERVER_ERROR, "Unreadable entitlement response") from e

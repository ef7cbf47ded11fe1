"""Apple App Store receipt verification.

Legacy base64 receipts go through ``verifyReceipt``: production first, and
exactly one retry against sandbox when Apple answers 21007. Signed JWS
transactions are handed to ``AppleSignedTransactionVerifier``.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from app.services.subscriptions.apple_jws import AppleSignedTransactionVerifier
from app.services.subscriptions.purchase import ValidatedPurchase, build_validated_purchase
from app.services.subscriptions.receipt_format import ReceiptFormat, detect_receipt_format
from app.utils.exceptions import (
    AuthorityRejected,
    AuthorityUnavailable,
    ConfigurationError,
    MalformedReceipt,
    ProductMismatch,
    ReceiptValidationError,
)
from app.utils.validators import parse_epoch_millis, to_epoch_millis

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_MALFORMED = 21002
STATUS_SHARED_SECRET_MISMATCH = 21004
STATUS_SERVER_UNAVAILABLE = 21005
STATUS_SANDBOX_RECEIPT_ON_PRODUCTION = 21007


def error_for_status(status: Any) -> ReceiptValidationError:
    """Map a non-zero verifyReceipt status to the error taxonomy."""
    message = f"Apple validation failed with status: {status}"
    if status == STATUS_MALFORMED:
        return MalformedReceipt(message)
    if status == STATUS_SHARED_SECRET_MISMATCH:
        return ConfigurationError(message)
    if status == STATUS_SERVER_UNAVAILABLE:
        return AuthorityUnavailable(message)
    # 21100-21199 are internal data access errors on Apple's side
    if isinstance(status, int) and 21100 <= status <= 21199:
        return AuthorityUnavailable(message)
    return AuthorityRejected(message)


class AppleReceiptVerifier:
    """Verifies App Store receipts against Apple."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        shared_secret: Optional[str],
        production_url: str,
        sandbox_url: str,
        signed_verifier: Optional[AppleSignedTransactionVerifier] = None,
        timeout: float = 10.0,
    ):
        self.client = client
        self.shared_secret = shared_secret
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.signed_verifier = signed_verifier
        self.timeout = timeout

    async def verify(self, receipt: str, product_id: str) -> ValidatedPurchase:
        """
        Verify a receipt and extract the canonical dates for ``product_id``.

        Raises:
            ReceiptValidationError: One of the taxonomy subclasses
        """
        receipt_format = detect_receipt_format(receipt)

        if receipt_format is ReceiptFormat.SIGNED_TOKEN:
            logger.info("Detected signed transaction token", extra={"product_id": product_id})
            if self.signed_verifier is None:
                raise ConfigurationError("Signed transaction verification is not configured")
            return self.signed_verifier.verify(receipt.strip(), product_id)

        if not self.shared_secret:
            raise ConfigurationError("APPLE_SHARED_SECRET is not set")

        environment = "production"
        result = await self._post(self.production_url, receipt)
        status = result.get("status")

        if status == STATUS_SANDBOX_RECEIPT_ON_PRODUCTION:
            logger.info("Sandbox receipt sent to production, retrying once against sandbox")
            environment = "sandbox"
            result = await self._post(self.sandbox_url, receipt)
            status = result.get("status")

        if status != STATUS_OK:
            logger.warning(f"Apple rejected receipt with status {status}", extra={"environment": environment})
            raise error_for_status(status)

        if result.get("environment") == "Sandbox":
            environment = "sandbox"

        return self._extract(result, product_id, environment)

    async def _post(self, url: str, receipt: str) -> Dict[str, Any]:
        payload = {
            "receipt-data": receipt,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        try:
            response = await self.client.post(url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise AuthorityUnavailable(f"Apple verification timed out: {url}") from e
        except httpx.HTTPError as e:
            raise AuthorityUnavailable(f"Apple verification request failed: {e}") from e

        if response.status_code >= 500:
            raise AuthorityUnavailable(f"Apple returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise AuthorityRejected(f"Apple returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthorityUnavailable("Apple returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise AuthorityUnavailable("Apple returned an unexpected body")
        return data

    @staticmethod
    def _extract(result: Dict[str, Any], product_id: str, environment: str) -> ValidatedPurchase:
        entries = result.get("latest_receipt_info") or (result.get("receipt") or {}).get("in_app") or []
        matching = [
            entry for entry in entries
            if isinstance(entry, dict) and entry.get("product_id") == product_id
        ]
        if not matching:
            raise ProductMismatch(f"Product {product_id} not found in receipt")

        # Sibling entries from the same subscription group are skipped above;
        # of the remaining ones the latest expiry is current.
        latest = max(matching, key=lambda entry: _millis_or_zero(entry.get("expires_date_ms")))

        return build_validated_purchase(
            purchase_time=parse_epoch_millis(latest.get("purchase_date_ms")),
            expiry_time=parse_epoch_millis(latest.get("expires_date_ms")),
            transaction_id=latest.get("transaction_id"),
            environment=environment,
        )


def _millis_or_zero(value: Any) -> int:
    parsed = parse_epoch_millis(value)
    return to_epoch_millis(parsed) if parsed else 0

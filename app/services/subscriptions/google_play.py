"""Google Play subscription verification.

A service-account credential is exchanged for an access token, then the
Android Publisher API is queried for the (packageName, productId,
purchaseToken) tuple.
"""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote

import google.auth.exceptions
import google.auth.transport.requests
import httpx
from google.oauth2 import service_account

from app.services.subscriptions.purchase import ValidatedPurchase, build_validated_purchase
from app.utils.exceptions import AuthorityRejected, AuthorityUnavailable, ConfigurationError
from app.utils.validators import parse_epoch_millis

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# purchaseType 0 marks a license-tester purchase
TEST_PURCHASE_TYPE = 0


def load_service_account_credentials(
    service_account_file: Optional[str] = None,
    service_account_info: Optional[dict] = None,
):
    """
    Build scoped service-account credentials from a key file or parsed JSON.

    Returns:
        Credentials, or None when neither source is configured

    Raises:
        ConfigurationError: If the configured key cannot be loaded
    """
    try:
        if service_account_info:
            return service_account.Credentials.from_service_account_info(
                service_account_info, scopes=[ANDROID_PUBLISHER_SCOPE]
            )
        if service_account_file:
            return service_account.Credentials.from_service_account_file(
                service_account_file, scopes=[ANDROID_PUBLISHER_SCOPE]
            )
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load Google service account: {e}") from e
    return None


class GooglePlayVerifier:
    """Verifies Play subscription purchase tokens."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        package_name: Optional[str],
        credentials: Any,
        api_base: str,
        timeout: float = 10.0,
    ):
        self.client = client
        self.package_name = package_name
        self.credentials = credentials
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    async def verify(self, receipt: str, product_id: str) -> ValidatedPurchase:
        """
        Verify a purchase token for ``product_id``.

        Raises:
            ReceiptValidationError: One of the taxonomy subclasses
        """
        if not self.package_name:
            raise ConfigurationError("GOOGLE_PLAY_PACKAGE_NAME is not set")
        if self.credentials is None:
            raise ConfigurationError("Google service account is not configured")

        access_token = await self._access_token()
        url = (
            f"{self.api_base}/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}"
            f"/tokens/{quote(receipt.strip(), safe='')}"
        )

        try:
            response = await self.client.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AuthorityUnavailable("Google Play verification timed out") from e
        except httpx.HTTPError as e:
            raise AuthorityUnavailable(f"Google Play verification request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise AuthorityUnavailable(f"Google Play returned HTTP {response.status_code}")
        if response.status_code == 401:
            raise ConfigurationError("Google Play rejected the service account token")
        if not response.is_success:
            logger.warning(f"Google Play rejected purchase token with HTTP {response.status_code}")
            raise AuthorityRejected(f"Google Play returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthorityUnavailable("Google Play returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise AuthorityUnavailable("Google Play returned an unexpected body")

        environment = "sandbox" if data.get("purchaseType") == TEST_PURCHASE_TYPE else "production"

        return build_validated_purchase(
            purchase_time=parse_epoch_millis(data.get("startTimeMillis")),
            expiry_time=parse_epoch_millis(data.get("expiryTimeMillis")),
            transaction_id=data.get("orderId"),
            environment=environment,
        )

    async def _access_token(self) -> str:
        try:
            return await asyncio.to_thread(self._refresh_token)
        except google.auth.exceptions.RefreshError as e:
            raise ConfigurationError(f"Service account token exchange was refused: {e}") from e
        except google.auth.exceptions.TransportError as e:
            raise AuthorityUnavailable(f"Service account token exchange failed: {e}") from e

    def _refresh_token(self) -> str:
        if not self.credentials.valid:
            self.credentials.refresh(google.auth.transport.requests.Request())
        return self.credentials.token

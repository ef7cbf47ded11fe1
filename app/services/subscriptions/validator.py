"""Receipt validator: one entry point, one adapter per billing authority."""

import logging
import time
from typing import Dict, Optional

import httpx

from app.config import Settings
from app.models.entitlement import Plan, Platform
from app.services.subscriptions.apple import AppleReceiptVerifier
from app.services.subscriptions.apple_jws import AppleSignedTransactionVerifier, load_root_certificates
from app.services.subscriptions.google_play import GooglePlayVerifier, load_service_account_credentials
from app.services.subscriptions.purchase import ValidatedPurchase
from app.utils.exceptions import ConfigurationError, ProductMismatch, ReceiptValidationError, ValidationError

logger = logging.getLogger(__name__)


class ReceiptValidator:
    """Stateless apart from its HTTP client; never writes anything."""

    def __init__(
        self,
        product_catalog: Dict[str, str],
        apple: Optional[AppleReceiptVerifier] = None,
        google: Optional[GooglePlayVerifier] = None,
    ):
        self.product_catalog = product_catalog
        self.apple = apple
        self.google = google

    def plan_for(self, product_id: str) -> Plan:
        """
        Map a product ID to its plan.

        Raises:
            ProductMismatch: If the product is not in the catalog
        """
        plan = self.product_catalog.get(product_id)
        if plan is None:
            raise ProductMismatch(f"Unknown productId: {product_id}")
        return Plan(plan)

    async def validate(self, receipt: str, product_id: str, platform: str) -> ValidatedPurchase:
        """
        Validate a receipt with the platform's billing authority.

        Args:
            receipt: Opaque receipt, signed token or purchase token
            product_id: Product the client says it bought
            platform: 'ios' or 'android'

        Returns:
            Authority-issued purchase and expiry times

        Raises:
            ReceiptValidationError: MalformedReceipt, AuthorityRejected,
                ProductMismatch, AuthorityUnavailable or ConfigurationError
            ValidationError: If the platform is unknown
        """
        self.plan_for(product_id)

        try:
            platform = Platform(platform)
        except ValueError as e:
            raise ValidationError('Invalid platform. Must be "ios" or "android"') from e

        adapter = self.apple if platform is Platform.IOS else self.google
        if adapter is None:
            raise ConfigurationError(f"No verifier configured for {platform.value}")

        start_time = time.time()
        try:
            result = await adapter.verify(receipt, product_id)
        except ReceiptValidationError as e:
            logger.warning(
                f"Receipt validation failed: {e.code}",
                extra={
                    "platform": platform.value,
                    "product_id": product_id,
                    "error_code": e.code,
                    "duration_ms": round((time.time() - start_time) * 1000, 2),
                },
            )
            raise

        logger.info(
            "Receipt validated",
            extra={
                "platform": platform.value,
                "product_id": product_id,
                "environment": result.environment,
                "expiry_time": result.expiry_time.isoformat(),
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return result


def build_receipt_validator(settings: Settings, client: httpx.AsyncClient) -> ReceiptValidator:
    """Wire the adapters from settings.

    Misconfiguration is logged here and surfaces as ConfigurationError when a
    receipt for the affected platform arrives.
    """
    try:
        roots = load_root_certificates(settings.apple_root_cert_path_list)
    except ConfigurationError as e:
        logger.error(str(e))
        roots = []

    apple = AppleReceiptVerifier(
        client=client,
        shared_secret=settings.apple_shared_secret,
        production_url=settings.apple_production_url,
        sandbox_url=settings.apple_sandbox_url,
        signed_verifier=AppleSignedTransactionVerifier(roots, bundle_id=settings.apple_bundle_id),
        timeout=settings.authority_timeout_seconds,
    )

    try:
        credentials = load_service_account_credentials(
            service_account_file=settings.google_service_account_file,
            service_account_info=settings.google_service_account_info,
        )
    except (ConfigurationError, ValueError) as e:
        logger.error(str(e))
        credentials = None

    google = GooglePlayVerifier(
        client=client,
        package_name=settings.google_play_package_name,
        credentials=credentials,
        api_base=settings.google_play_api_base,
        timeout=settings.authority_timeout_seconds,
    )

    return ReceiptValidator(settings.product_catalog, apple=apple, google=google)

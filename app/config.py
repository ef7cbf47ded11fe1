"""Application configuration using pydantic-settings."""

import json
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    port: int = 8080
    host: str = "0.0.0.0"

    # Logging
    log_level: str = "INFO"

    # Billing authority calls
    authority_timeout_seconds: float = 10.0

    # Rate Limiting
    rate_limit_per_hour: int = 100
    validate_rate_limit: str = "30/minute"

    # CORS
    cors_origins: str = "*"  # Comma-separated origins or "*" for all

    # Product catalog (same ids on both stores)
    monthly_product_id: str = "whatscard_premium_monthly"
    yearly_product_id: str = "whatscard_premium_yearly"

    # Apple App Store
    apple_shared_secret: Optional[str] = None
    apple_bundle_id: Optional[str] = None
    apple_root_cert_paths: str = ""  # Comma-separated DER or PEM files
    apple_production_url: str = "https://buy.itunes.apple.com/verifyReceipt"
    apple_sandbox_url: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # Google Play
    google_play_package_name: Optional[str] = None
    google_service_account_file: Optional[str] = None
    google_service_account_json: Optional[str] = None
    google_play_api_base: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"

    # Entitlement store: "firestore" or "memory"
    entitlement_backend: str = "firestore"
    entitlements_collection: str = "entitlements"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Get list of CORS origins."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def product_catalog(self) -> Dict[str, str]:
        """Map of store product id to plan name."""
        return {
            self.monthly_product_id: "monthly",
            self.yearly_product_id: "yearly",
        }

    @property
    def apple_root_cert_path_list(self) -> List[str]:
        """Get list of trusted Apple root certificate files."""
        return [path.strip() for path in self.apple_root_cert_paths.split(",") if path.strip()]

    @property
    def google_service_account_info(self) -> Optional[dict]:
        """Parsed inline service account JSON, if provided."""
        if not self.google_service_account_json:
            return None
        return json.loads(self.google_service_account_json)


# Global settings instance
settings = Settings()

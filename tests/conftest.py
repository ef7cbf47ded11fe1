"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_entitlement_store, get_receipt_validator
from app.config import settings
from app.main import app
from app.middleware.auth import get_current_subscriber
from app.middleware.rate_limit import limiter
from app.services.subscriptions.entitlement_store import InMemoryEntitlementStore
from app.services.subscriptions.purchase import ValidatedPurchase
from app.services.subscriptions.validator import ReceiptValidator

SUBSCRIBER_ID = "user-123"
MONTHLY = settings.monthly_product_id
YEARLY = settings.yearly_product_id


def purchase_expiring_in(days: float, purchased_days_ago: float = 1.0) -> ValidatedPurchase:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    return ValidatedPurchase(
        purchase_time=now - timedelta(days=purchased_days_ago),
        expiry_time=now + timedelta(days=days),
        transaction_id="1000000123456789",
    )


class FakeVerifier:
    """Billing authority adapter returning a canned purchase or raising a canned error."""

    def __init__(self):
        self.result = purchase_expiring_in(30)
        self.error = None
        self.calls = []

    async def verify(self, receipt, product_id):
        self.calls.append((receipt, product_id))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def store():
    return InMemoryEntitlementStore()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def validator(verifier):
    return ReceiptValidator(settings.product_catalog, apple=verifier, google=verifier)


@pytest.fixture
def client(store, validator):
    """Create test client authenticated as SUBSCRIBER_ID."""
    app.dependency_overrides[get_current_subscriber] = lambda: SUBSCRIBER_ID
    app.dependency_overrides[get_entitlement_store] = lambda: store
    app.dependency_overrides[get_receipt_validator] = lambda: validator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(store, validator):
    """Create test client without an authentication override."""
    app.dependency_overrides[get_entitlement_store] = lambda: store
    app.dependency_overrides[get_receipt_validator] = lambda: validator
    yield TestClient(app)
    app.dependency_overrides.clear()

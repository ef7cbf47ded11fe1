"""Tests for the entitlement store and the validate-then-record flow."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

from app.models.entitlement import EntitlementRecord, EntitlementView, Plan, Platform
from app.services.subscriptions.entitlement_store import (
    FirestoreEntitlementStore,
    InMemoryEntitlementStore,
    compare_and_set,
    should_replace,
)
from app.services.subscriptions.update_entitlement import validate_and_record
from app.utils.exceptions import AuthorityRejected, AuthorityUnavailable, ProductMismatch, StoreError

from conftest import MONTHLY, SUBSCRIBER_ID, YEARLY, purchase_expiring_in

NOW = datetime.now(timezone.utc)


def record(expires_in_days, product_id=MONTHLY, plan=Plan.MONTHLY, transaction_id="t"):
    return EntitlementRecord(
        subscriberId=SUBSCRIBER_ID,
        productId=product_id,
        plan=plan,
        platform=Platform.IOS,
        transactionId=transaction_id,
        purchaseTime=NOW - timedelta(days=1),
        expiryTime=NOW + timedelta(days=expires_in_days),
        isActive=expires_in_days > 0,
    )


def test_should_replace():
    assert should_replace(None, record(30))
    assert should_replace(record(30), record(30))
    assert should_replace(record(30), record(365))
    assert not should_replace(record(365), record(30))


def test_upsert_creates_record():
    store = InMemoryEntitlementStore()

    outcome = asyncio.run(store.upsert(record(30)))

    assert outcome.written
    stored = asyncio.run(store.get(SUBSCRIBER_ID))
    assert stored.productId == MONTHLY
    assert stored.createdAt is not None
    assert stored.updatedAt is not None


def test_out_of_order_writes_keep_later_expiry():
    store = InMemoryEntitlementStore()

    async def scenario():
        await store.upsert(record(365, YEARLY, Plan.YEARLY, "t2"))
        return await store.upsert(record(30, MONTHLY, Plan.MONTHLY, "t1"))

    outcome = asyncio.run(scenario())

    assert not outcome.written
    stored = asyncio.run(store.get(SUBSCRIBER_ID))
    assert stored.transactionId == "t2"
    assert stored.plan == "yearly"


def test_concurrent_writes_leave_one_record_with_latest_expiry():
    store = InMemoryEntitlementStore()

    async def scenario():
        await asyncio.gather(*(store.upsert(record(days, transaction_id=str(days))) for days in (30, 365, 90)))

    asyncio.run(scenario())

    assert store.count() == 1
    assert asyncio.run(store.get(SUBSCRIBER_ID)).transactionId == "365"


def test_renewal_keeps_created_at():
    store = InMemoryEntitlementStore()

    async def scenario():
        first = await store.upsert(record(30))
        second = await store.upsert(record(60))
        return first, second

    first, second = asyncio.run(scenario())

    assert second.written
    assert second.record.createdAt == first.record.createdAt


def test_expired_record_is_not_live_even_if_flag_set():
    stale = record(30).model_copy(update={"expiryTime": NOW - timedelta(seconds=1)})

    assert stale.isActive
    assert not stale.is_live(NOW)
    assert not EntitlementView.from_record(stale, NOW).isActive


def test_validate_and_record_writes_on_success(validator, verifier, store):
    verifier.result = purchase_expiring_in(30)

    purchase, outcome = asyncio.run(
        validate_and_record(validator, store, SUBSCRIBER_ID, "receipt", MONTHLY, Platform.ANDROID, "declared")
    )

    assert outcome.written
    stored = asyncio.run(store.get(SUBSCRIBER_ID))
    assert stored.expiryTime == purchase.expiry_time
    assert stored.plan == "monthly"
    assert stored.platform == "android"
    assert stored.isActive
    assert stored.rawReceipt == "receipt"
    # Authority-issued transaction ID wins over the client-declared one
    assert stored.transactionId == "1000000123456789"


@pytest.mark.parametrize("error", [AuthorityRejected("no"), AuthorityUnavailable("down")])
def test_failed_validation_leaves_store_unchanged(validator, verifier, store, error):
    asyncio.run(store.upsert(record(30, transaction_id="existing")))
    before = asyncio.run(store.get(SUBSCRIBER_ID)).model_dump()
    verifier.error = error

    with pytest.raises(type(error)):
        asyncio.run(validate_and_record(validator, store, SUBSCRIBER_ID, "receipt", MONTHLY, Platform.IOS))

    assert asyncio.run(store.get(SUBSCRIBER_ID)).model_dump() == before


def test_unknown_product_is_rejected_before_authority_call(validator, verifier, store):
    with pytest.raises(ProductMismatch):
        asyncio.run(validate_and_record(validator, store, SUBSCRIBER_ID, "receipt", "other_product", Platform.IOS))

    assert verifier.calls == []
    assert store.count() == 0


def test_firestore_read_error_is_store_error():
    db = MagicMock()
    db.collection.return_value.document.return_value.get.side_effect = google_exceptions.ServiceUnavailable("down")

    with pytest.raises(StoreError):
        asyncio.run(FirestoreEntitlementStore(db).get(SUBSCRIBER_ID))


def test_firestore_get_missing_document():
    db = MagicMock()
    db.collection.return_value.document.return_value.get.return_value.exists = False

    assert asyncio.run(FirestoreEntitlementStore(db).get(SUBSCRIBER_ID)) is None
    db.collection.assert_called_with("entitlements")
    db.collection.return_value.document.assert_called_with(SUBSCRIBER_ID)


class FakeSnapshot:
    def __init__(self, data):
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return dict(self._data)


class FakeDocRef:
    def __init__(self, data=None):
        self.data = data

    def get(self, transaction=None):
        return FakeSnapshot(self.data)


class FakeTransaction:
    def __init__(self):
        self.writes = []

    def set(self, doc_ref, data):
        self.writes.append(data)
        doc_ref.data = data


def fake_db(doc_ref):
    db = MagicMock()
    db.collection.return_value.document.return_value = doc_ref
    db.transaction.side_effect = FakeTransaction
    return db


def test_compare_and_set_writes_newer_expiry():
    doc_ref = FakeDocRef(record(30).model_dump())
    transaction = FakeTransaction()

    outcome = compare_and_set(transaction, doc_ref, record(365, YEARLY, Plan.YEARLY))

    assert outcome.written
    assert len(transaction.writes) == 1
    assert transaction.writes[0]["plan"] == "yearly"


def test_compare_and_set_skips_older_expiry():
    doc_ref = FakeDocRef(record(365, YEARLY, Plan.YEARLY).model_dump())
    transaction = FakeTransaction()

    outcome = compare_and_set(transaction, doc_ref, record(30))

    assert not outcome.written
    assert transaction.writes == []
    assert outcome.record.plan == Plan.YEARLY


def test_compare_and_set_creates_missing_document():
    doc_ref = FakeDocRef()
    transaction = FakeTransaction()

    outcome = compare_and_set(transaction, doc_ref, record(30))

    assert outcome.written
    assert outcome.record.createdAt is not None
    assert doc_ref.data["transactionId"] == "t"


def test_firestore_upsert_keeps_later_expiry(monkeypatch):
    monkeypatch.setattr("app.services.subscriptions.entitlement_store.firestore.transactional", lambda fn: fn)
    doc_ref = FakeDocRef()
    store = FirestoreEntitlementStore(fake_db(doc_ref))

    asyncio.run(store.upsert(record(365, YEARLY, Plan.YEARLY, transaction_id="t2")))
    outcome = asyncio.run(store.upsert(record(30, transaction_id="t1")))

    assert not outcome.written
    assert doc_ref.data["transactionId"] == "t2"
    assert asyncio.run(store.get(SUBSCRIBER_ID)).plan == Plan.YEARLY


def test_firestore_write_error_is_store_error():
    db = MagicMock()
    db.transaction.side_effect = google_exceptions.ServiceUnavailable("down")

    with pytest.raises(StoreError):
        asyncio.run(FirestoreEntitlementStore(db).upsert(record(30)))

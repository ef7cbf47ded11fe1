"""Entitlement store: one current record per subscriber.

Writes are conditional on expiry so a slow, stale validation never
overwrites a fresher one: the candidate wins only if its expiryTime is at
least the stored one. There is no history; each write replaces the record.

Firestore document ID is the subscriber ID. Only the backend writes here;
clients read their own record through the API.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from app.models.entitlement import EntitlementRecord
from app.utils.exceptions import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertOutcome:
    record: EntitlementRecord
    written: bool


def should_replace(existing: Optional[EntitlementRecord], candidate: EntitlementRecord) -> bool:
    """True if ``candidate`` may overwrite ``existing``."""
    return existing is None or candidate.expiryTime >= existing.expiryTime


def _stamp(existing: Optional[EntitlementRecord], candidate: EntitlementRecord) -> EntitlementRecord:
    now = datetime.now(timezone.utc)
    created_at = existing.createdAt if existing and existing.createdAt else now
    return candidate.model_copy(update={"createdAt": created_at, "updatedAt": now})


class EntitlementStore(ABC):
    """Single source of truth for current entitlements."""

    @abstractmethod
    async def get(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        ...

    @abstractmethod
    async def upsert(self, record: EntitlementRecord) -> UpsertOutcome:
        """Atomically write ``record`` unless a later expiry is already stored."""
        ...


class InMemoryEntitlementStore(EntitlementStore):
    """
    Process-local store for development and tests.

    Keeps one lock per subscriber ever written and never evicts them, so
    memory grows with the subscriber count. Not for production use.
    """

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        data = self._records.get(subscriber_id)
        return EntitlementRecord(**data) if data else None

    async def upsert(self, record: EntitlementRecord) -> UpsertOutcome:
        async with self._locks[record.subscriberId]:
            existing = await self.get(record.subscriberId)
            if not should_replace(existing, record):
                return UpsertOutcome(record=existing, written=False)
            stored = _stamp(existing, record)
            self._records[record.subscriberId] = stored.model_dump()
            return UpsertOutcome(record=stored, written=True)

    def count(self) -> int:
        return len(self._records)


class FirestoreEntitlementStore(EntitlementStore):
    """Firestore-backed store; the read-compare-write runs in a transaction."""

    def __init__(self, db, collection: str = "entitlements"):
        self.db = db
        self.collection = collection

    def _doc_ref(self, subscriber_id: str):
        return self.db.collection(self.collection).document(subscriber_id)

    async def get(self, subscriber_id: str) -> Optional[EntitlementRecord]:
        try:
            snapshot = await asyncio.to_thread(self._doc_ref(subscriber_id).get)
        except google_exceptions.GoogleAPICallError as e:
            raise StoreError(f"Failed to read entitlement: {e}") from e
        if not snapshot.exists:
            return None
        return EntitlementRecord(**snapshot.to_dict())

    async def upsert(self, record: EntitlementRecord) -> UpsertOutcome:
        try:
            return await asyncio.to_thread(self._upsert_in_transaction, record)
        except google_exceptions.GoogleAPICallError as e:
            raise StoreError(f"Failed to write entitlement: {e}") from e

    def _upsert_in_transaction(self, record: EntitlementRecord) -> UpsertOutcome:
        write = firestore.transactional(compare_and_set)
        outcome = write(self.db.transaction(), self._doc_ref(record.subscriberId), record)
        logger.info(
            f"Entitlement upsert for {record.subscriberId}: written={outcome.written}",
            extra={"subscriber_id": record.subscriberId, "written": outcome.written},
        )
        return outcome


def compare_and_set(transaction, doc_ref, record: EntitlementRecord) -> UpsertOutcome:
    """Read-compare-write body of a Firestore transaction; may run more than once on contention."""
    snapshot = doc_ref.get(transaction=transaction)
    existing = EntitlementRecord(**snapshot.to_dict()) if snapshot.exists else None
    if not should_replace(existing, record):
        return UpsertOutcome(record=existing, written=False)
    stored = _stamp(existing, record)
    transaction.set(doc_ref, stored.model_dump())
    return UpsertOutcome(record=stored, written=True)

"""Client-side purchase state machine.

States: IDLE -> PURCHASING -> VALIDATING -> ACTIVE | FAILED.
ACTIVE returns to IDLE when the purchase call completes; FAILED returns to
IDLE on ``acknowledge_failure()``. Any purchase or restore started while not
IDLE is rejected with AlreadyInProgress, so at most one attempt is ever in
flight per orchestrator instance.

Entitlement is never granted locally: the cache is only updated after the
server confirmed the receipt, and the store transaction is acknowledged
only after that confirmation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from app.client.billing import BillingClient, BillingClientError, NativePurchase, PurchaseEvent, PurchaseEventKind
from app.client.cache import EntitlementCache
from app.client.results import PurchaseErrorCode, PurchaseResult, RETRYABLE_ERRORS, ValidatorCallError
from app.client.validator_client import ReceiptValidatorClient, ServerValidation
from app.models.entitlement import EntitlementView, Plan, Platform

logger = logging.getLogger(__name__)


class PurchaseState(str, Enum):
    IDLE = "idle"
    PURCHASING = "purchasing"
    VALIDATING = "validating"
    ACTIVE = "active"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PurchaseAttempt:
    """Lives only for one purchase call; never persisted."""

    plan: Plan
    product_id: str
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: AttemptStatus = AttemptStatus.PENDING


StateListener = Callable[[PurchaseState], None]


class PurchaseOrchestrator:
    """Owns the single-flight purchase state for one signed-in subscriber."""

    def __init__(
        self,
        billing: BillingClient,
        validator: ReceiptValidatorClient,
        cache: EntitlementCache,
        subscriber_id: str,
        platform: Platform,
        product_ids: Dict[Plan, str],
    ):
        self.billing = billing
        self.validator = validator
        self.cache = cache
        self.subscriber_id = subscriber_id
        self.platform = Platform(platform)
        self.product_ids = {Plan(plan): product_id for plan, product_id in product_ids.items()}
        self.last_error: Optional[PurchaseErrorCode] = None
        self._state = PurchaseState.IDLE
        self._attempt: Optional[PurchaseAttempt] = None
        self._pending_events: Dict[str, asyncio.Future] = {}
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> PurchaseState:
        return self._state

    @property
    def attempt(self) -> Optional[PurchaseAttempt]:
        return self._attempt

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def current_entitlement(self) -> Optional[EntitlementView]:
        """Last server-confirmed entitlement from the local cache."""
        return self.cache.get()

    def _transition(self, new_state: PurchaseState) -> None:
        logger.debug(f"Purchase state {self._state.value} -> {new_state.value}")
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)

    # Purchase

    async def purchase(self, plan: Plan) -> PurchaseResult:
        """
        Buy ``plan``.

        The attempt runs in its own task, so the caller going away (a
        dismissed screen) neither loses the store's result nor interrupts a
        validation already in flight.
        """
        if self._state is not PurchaseState.IDLE:
            logger.info("Purchase rejected: another operation is in progress")
            return PurchaseResult.failed(PurchaseErrorCode.ALREADY_IN_PROGRESS)

        plan = Plan(plan)
        product_id = self.product_ids.get(plan)
        if product_id is None:
            return PurchaseResult.failed(PurchaseErrorCode.PRODUCT_MISMATCH, f"No product for plan {plan.value}")

        attempt = PurchaseAttempt(plan=plan, product_id=product_id)
        self._attempt = attempt
        self._pending_events[attempt.attempt_id] = asyncio.get_running_loop().create_future()
        self._transition(PurchaseState.PURCHASING)

        task = asyncio.ensure_future(self._run_attempt(attempt))
        return await asyncio.shield(task)

    def handle_purchase_event(self, event: PurchaseEvent) -> bool:
        """
        Deliver a native purchase result. Must be called on the event loop.

        Returns:
            True if the event matched a pending attempt
        """
        future = self._pending_events.get(event.attempt_id)
        if future is None or future.done():
            logger.warning(
                "Ignoring purchase event for unknown attempt",
                extra={"attempt_id": event.attempt_id, "kind": event.kind.value},
            )
            return False
        future.set_result(event)
        return True

    async def _run_attempt(self, attempt: PurchaseAttempt) -> PurchaseResult:
        try:
            return await self._drive_attempt(attempt)
        except Exception as e:
            logger.error(f"Unexpected error in purchase attempt: {str(e)}", exc_info=True)
            # Before validation the native SDK is the only party involved
            if attempt.status is AttemptStatus.PENDING:
                return self._fail(attempt, PurchaseErrorCode.NATIVE_ERROR, str(e))
            return self._fail(attempt, PurchaseErrorCode.SERVER_ERROR, str(e))

    async def _drive_attempt(self, attempt: PurchaseAttempt) -> PurchaseResult:
        future = self._pending_events[attempt.attempt_id]
        try:
            await self.billing.start_purchase(attempt.product_id, attempt.attempt_id)
            event = await future
        except BillingClientError as e:
            logger.warning(f"Native purchase failed to start: {e}")
            return self._fail(attempt, PurchaseErrorCode.NATIVE_ERROR, str(e))
        finally:
            self._pending_events.pop(attempt.attempt_id, None)

        if event.kind is PurchaseEventKind.CANCELLED:
            logger.info("Purchase cancelled by user")
            return self._fail(attempt, PurchaseErrorCode.USER_CANCELLED, status=AttemptStatus.CANCELLED)
        if event.kind is PurchaseEventKind.ERROR or not event.receipt:
            return self._fail(attempt, PurchaseErrorCode.NATIVE_ERROR, event.error_message or "Purchase failed")

        attempt.status = AttemptStatus.VALIDATING
        self._transition(PurchaseState.VALIDATING)
        try:
            validation = await self.validator.validate(
                receipt=event.receipt,
                product_id=attempt.product_id,
                subscriber_id=self.subscriber_id,
                platform=self.platform,
                transaction_id=event.transaction_id,
            )
        except ValidatorCallError as e:
            return self._fail(attempt, e.code, str(e))

        entitlement = await self._confirm(attempt.plan, event.transaction_id, validation)
        attempt.status = AttemptStatus.SUCCEEDED
        self._transition(PurchaseState.ACTIVE)
        self._attempt = None
        self._transition(PurchaseState.IDLE)
        return PurchaseResult.ok(entitlement)

    def _fail(
        self,
        attempt: PurchaseAttempt,
        code: PurchaseErrorCode,
        message: Optional[str] = None,
        status: AttemptStatus = AttemptStatus.FAILED,
    ) -> PurchaseResult:
        attempt.status = status
        self.last_error = code
        self._transition(PurchaseState.FAILED)
        return PurchaseResult.failed(code, message)

    def acknowledge_failure(self) -> None:
        """Return to IDLE after the UI has shown (or skipped) the failure."""
        if self._state is PurchaseState.FAILED:
            self._attempt = None
            self.last_error = None
            self._transition(PurchaseState.IDLE)

    # Restore

    async def restore(self) -> PurchaseResult:
        """
        Re-validate the store's purchase history without charging.

        Safe on every app start. An empty history is NoPurchasesFound, not a
        failure, and restore always ends back in IDLE.
        """
        if self._state is not PurchaseState.IDLE:
            return PurchaseResult.failed(PurchaseErrorCode.ALREADY_IN_PROGRESS)

        self._transition(PurchaseState.VALIDATING)
        try:
            result = await self._restore()
        except Exception as e:
            logger.error(f"Unexpected error in restore: {str(e)}", exc_info=True)
            result = PurchaseResult.failed(PurchaseErrorCode.SERVER_ERROR, str(e))
        finally:
            if self._state is not PurchaseState.IDLE:
                self._transition(PurchaseState.IDLE)
        return result

    async def _restore(self) -> PurchaseResult:
        try:
            history = await self.billing.query_purchase_history()
        except BillingClientError as e:
            return PurchaseResult.failed(PurchaseErrorCode.NATIVE_ERROR, str(e))

        known = {product_id: plan for plan, product_id in self.product_ids.items()}
        candidates = [purchase for purchase in history if purchase.product_id in known]
        if not candidates:
            logger.info("No purchases found to restore")
            return PurchaseResult.failed(PurchaseErrorCode.NO_PURCHASES_FOUND)

        candidates.sort(key=_newest_first)
        saw_retryable = False
        for purchase in candidates:
            try:
                validation = await self.validator.validate(
                    receipt=purchase.receipt,
                    product_id=purchase.product_id,
                    subscriber_id=self.subscriber_id,
                    platform=self.platform,
                    transaction_id=purchase.transaction_id,
                )
            except ValidatorCallError as e:
                saw_retryable = saw_retryable or e.code in RETRYABLE_ERRORS
                continue

            entitlement = await self._confirm(known[purchase.product_id], purchase.transaction_id, validation)
            self._transition(PurchaseState.ACTIVE)
            logger.info("Purchases restored")
            return PurchaseResult.ok(entitlement)

        if saw_retryable:
            return PurchaseResult.failed(PurchaseErrorCode.AUTHORITY_UNAVAILABLE)
        return PurchaseResult.failed(PurchaseErrorCode.NO_PURCHASES_FOUND)

    # Cache

    async def refresh(self) -> Optional[EntitlementView]:
        """Reload the cache from the server; keep it as-is if the server is unreachable."""
        try:
            view = await self.validator.fetch_entitlement(self.subscriber_id)
        except ValidatorCallError as e:
            logger.warning(f"Entitlement refresh failed, keeping cached value: {e}")
            return self.cache.get()
        if view is None:
            self.cache.clear()
        else:
            self.cache.set(view)
        return self.cache.get()

    async def _confirm(
        self,
        plan: Plan,
        transaction_id: Optional[str],
        validation: ServerValidation,
    ) -> Optional[EntitlementView]:
        """Acknowledge a server-confirmed transaction and refresh the cache."""
        if transaction_id:
            try:
                await self.billing.acknowledge(transaction_id)
            except BillingClientError as e:
                # The store redelivers unfinished transactions; revalidating is idempotent
                logger.warning(f"Acknowledging transaction failed: {e}")

        try:
            view = await self.validator.fetch_entitlement(self.subscriber_id)
        except ValidatorCallError as e:
            logger.warning(f"Entitlement read-back failed, using validation response: {e}")
            view = EntitlementView(
                plan=plan,
                isActive=datetime.now(timezone.utc) < validation.expiry_time,
                expiryTime=validation.expiry_time,
            )
        if view is not None:
            self.cache.set(view)
        return self.cache.get()


def _newest_first(purchase: NativePurchase) -> float:
    return -purchase.purchase_time.timestamp() if purchase.purchase_time else 0.0

"""
Payment reconciliation: turn the provider's eventually-consistent payment status
into a single authoritative CONFIRMED transition.

Webhook deliveries and scheduled polls both end in `ReconciliationEngine.reconcile`.
It always asks the provider itself (the notification body is never trusted), and
relies on the idempotent CONFIRMED transition, so duplicate, late or concurrent
calls for the same payment are harmless.
"""
import asyncio
import logging
from enum import Enum

from orderflow.errors import InvalidTransition, ProviderUnavailable, UnknownPayment
from orderflow.metrics import (
    payment_polls_exhausted_total,
    payment_reconciliations_total,
    payment_watchers_active,
)
from orderflow.models import ProviderStatus, utcnow
from orderflow.order_state import OrderStatus
from orderflow.provider_client import ProviderClient
from orderflow.roles import SYSTEM_ACTOR_ID, Role
from orderflow.store import OrderStore
from orderflow.transitions import TransitionAuthority

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"              # payment succeeded, order confirmed and paid
    ALREADY_APPLIED = "already_applied"  # attempt was applied earlier; nothing to do
    AUTHORIZED = "authorized"            # waiting_for_capture: order confirmed, not yet paid
    PENDING = "pending"
    CANCELED = "canceled"
    FAILED = "failed"
    ORDER_CLOSED = "order_closed"        # payment resolved after the order was cancelled

    @property
    def is_terminal(self) -> bool:
        return self not in (ReconcileOutcome.PENDING, ReconcileOutcome.AUTHORIZED)


_STORED_TERMINAL = {
    ProviderStatus.CANCELED: ReconcileOutcome.CANCELED,
    ProviderStatus.FAILED: ReconcileOutcome.FAILED,
}


class ReconciliationEngine:
    def __init__(
        self,
        store: OrderStore,
        provider: ProviderClient,
        authority: TransitionAuthority,
        provider_timeout: float,
    ):
        self.store = store
        self.provider = provider
        self.authority = authority
        self.provider_timeout = provider_timeout

    async def _query_provider(self, payment_id: str) -> ProviderStatus:
        try:
            return await asyncio.wait_for(self.provider.get_status(payment_id), self.provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"status query for {payment_id} timed out") from e

    async def reconcile(self, payment_id: str) -> ReconcileOutcome:
        attempt = await self.store.get_attempt(payment_id)
        if attempt is None:
            raise UnknownPayment(payment_id)
        if attempt.applied:
            payment_reconciliations_total.labels(outcome=ReconcileOutcome.ALREADY_APPLIED.value).inc()
            return ReconcileOutcome.ALREADY_APPLIED
        if attempt.status in _STORED_TERMINAL:
            return _STORED_TERMINAL[attempt.status]

        try:
            status = await self._query_provider(payment_id)
        except ProviderUnavailable:
            # a failed query still counts against the attempt's check budget
            await self.store.record_check(payment_id, attempt.status, utcnow())
            raise
        attempt = await self.store.record_check(payment_id, status, utcnow())

        if status == ProviderStatus.SUCCEEDED:
            outcome = await self._confirm(attempt.order_id, payment_id, mark_paid=True)
            await self.store.mark_attempt_applied(payment_id, utcnow())
        elif status == ProviderStatus.WAITING_FOR_CAPTURE:
            outcome = await self._confirm(attempt.order_id, payment_id, mark_paid=False)
            if outcome == ReconcileOutcome.ORDER_CLOSED:
                await self.store.mark_attempt_applied(payment_id, utcnow())
        elif status in _STORED_TERMINAL:
            outcome = _STORED_TERMINAL[status]
            logger.info("Payment %s for order %s %s; order left %s",
                        payment_id, attempt.order_id, status.value, OrderStatus.PENDING.value)
        else:
            outcome = ReconcileOutcome.PENDING

        payment_reconciliations_total.labels(outcome=outcome.value).inc()
        return outcome

    async def _confirm(self, order_id: str, payment_id: str, mark_paid: bool) -> ReconcileOutcome:
        try:
            await self.authority.request_transition(
                order_id,
                OrderStatus.CONFIRMED,
                Role.SYSTEM,
                SYSTEM_ACTOR_ID,
                mark_paid=mark_paid,
            )
        except InvalidTransition as e:
            logger.error("Payment %s resolved but order %s is %s; needs operator follow-up",
                         payment_id, order_id, e.current_status)
            return ReconcileOutcome.ORDER_CLOSED
        return ReconcileOutcome.CONFIRMED if mark_paid else ReconcileOutcome.AUTHORIZED


class ReconciliationScheduler:
    """
    One bounded polling loop per payment attempt.

    Each tick sleeps `interval` seconds and reconciles once. A loop ends on a
    terminal outcome, on UnknownPayment, or after `max_attempts` ticks; in the
    last case the attempt is left pending for an operator, never cancelled.
    """

    def __init__(self, engine: ReconciliationEngine, interval: float, max_attempts: int):
        self.engine = engine
        self.interval = interval
        self.max_attempts = max_attempts
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active(self) -> set[str]:
        return set(self._tasks)

    def watch(self, payment_id: str, checks_done: int = 0) -> asyncio.Task:
        """Start polling payment_id unless a loop for it is already running."""
        task = self._tasks.get(payment_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._poll(payment_id, checks_done), name=f"poll:{payment_id}")
        self._tasks[payment_id] = task
        payment_watchers_active.inc()
        task.add_done_callback(lambda t: self._forget(payment_id, t))
        return task

    def _forget(self, payment_id: str, task: asyncio.Task) -> None:
        payment_watchers_active.dec()
        if self._tasks.get(payment_id) is task:
            del self._tasks[payment_id]

    def cancel(self, payment_id: str) -> bool:
        task = self._tasks.get(payment_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def restart(self, payment_id: str) -> asyncio.Task:
        """Cancel any running loop for payment_id and start one with a fresh budget."""
        task = self._tasks.get(payment_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        return self.watch(payment_id)

    async def _poll(self, payment_id: str, checks_done: int) -> ReconcileOutcome | None:
        for tick in range(checks_done, self.max_attempts):
            await asyncio.sleep(self.interval)
            try:
                outcome = await self.engine.reconcile(payment_id)
            except ProviderUnavailable as e:
                logger.warning("Poll %d/%d for payment %s: provider unavailable (%s)",
                               tick + 1, self.max_attempts, payment_id, e)
                continue
            except UnknownPayment:
                logger.warning("Stopped polling unknown payment %s", payment_id)
                return None
            if outcome.is_terminal:
                logger.info("Payment %s reconciled: %s (poll %d)", payment_id, outcome.value, tick + 1)
                return outcome
        payment_polls_exhausted_total.inc()
        logger.warning("Payment %s still unresolved after %d polls; left pending for operator review",
                       payment_id, self.max_attempts)
        return ReconcileOutcome.PENDING

    async def shutdown(self, timeout: float) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("Stopping %d polling loop(s) ...", len(tasks))
        for t in tasks:
            t.cancel()
        await asyncio.wait(tasks, timeout=timeout)

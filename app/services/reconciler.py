"""
Payment Reconciler - settles payment orders against PesaPal's authoritative status.

Per tracking id:
    checking -> confirmed | failed | cancelled | invalid   (terminal)
    checking -> checking                                    (retry after interval)
    checking -> expired                                     (poll budget exhausted)

Confirmation is a two-step saga: the ledger is finalized first, then the
entitlement is activated. If activation fails the order row is marked as
divergent so the reconcile job can retry it.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from structlog import get_logger

from app.config import Settings
from app.exceptions import AuthError, ReconciliationDivergence, StatusCheckError
from app.models.api import OrderStatus, PaymentOutcome
from app.models.domain import PaymentOrderData, ReconcileResult
from app.observability.metrics import metrics
from app.services.entitlement import EntitlementActivator
from app.services.ledger import PaymentLedger
from app.services.pesapal_client import PesapalClient
from app.services.status_mapping import map_provider_status
from app.services.token_cache import PesapalTokenCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollPolicy:
    """Bounds for the status polling loop."""

    interval_seconds: float = 3.0
    max_attempts: int = 40
    timeout_seconds: float = 180.0
    max_consecutive_errors: int = 5
    backoff_cap_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollPolicy":
        return cls(
            interval_seconds=settings.status_poll_interval_seconds,
            max_attempts=settings.status_poll_max_attempts,
            timeout_seconds=settings.status_poll_timeout_seconds,
            max_consecutive_errors=settings.status_check_max_errors,
            backoff_cap_seconds=settings.status_check_backoff_cap_seconds,
        )

    def error_delay(self, consecutive_errors: int) -> float:
        """Exponential backoff after transient status-check errors."""
        delay = self.interval_seconds * (2 ** max(consecutive_errors - 1, 0))
        return min(delay, self.backoff_cap_seconds)


class CancellationToken:
    """Lets the caller stop a poll loop, e.g. when the user navigates away."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; return True early if cancelled."""
        if timeout <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except TimeoutError:
            return False
        return True


class PaymentReconciler:
    """Queries PesaPal for a tracking id and applies the outcome locally."""

    def __init__(
        self,
        ledger: PaymentLedger,
        token_cache: PesapalTokenCache,
        client: PesapalClient,
        activator: EntitlementActivator,
        policy: PollPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.token_cache = token_cache
        self.client = client
        self.activator = activator
        self.policy = policy or PollPolicy()
        self._clock = clock

    async def check_once(self, tracking_id: str) -> ReconcileResult:
        """
        Run one status check and apply it.

        Raises:
            StatusCheckError: Provider unreachable, errored, or reported an unknown status
            ReconciliationDivergence: Payment confirmed but entitlement activation failed
            StateError: The ledger rejected the transition
        """
        order = await self.ledger.find_by_tracking_id(tracking_id)

        if order is not None and order.is_terminal:
            if order.status == OrderStatus.CONFIRMED and order.has_divergence:
                order = await self._grant(order)
            return ReconcileResult(
                tracking_id=tracking_id,
                outcome=PaymentOutcome(order.status.value),
                order=order,
            )

        try:
            token = await self.token_cache.get_valid_token()
            status = await self.client.get_transaction_status(token, tracking_id)
        except AuthError as exc:
            self.token_cache.invalidate()
            metrics.status_checks_total.labels(outcome="error").inc()
            raise StatusCheckError(tracking_id, exc.message) from exc
        except StatusCheckError:
            metrics.status_checks_total.labels(outcome="error").inc()
            raise

        try:
            outcome = map_provider_status(
                status.payment_status_description, status.status_code, tracking_id
            )
        except StatusCheckError:
            metrics.status_checks_total.labels(outcome="unrecognized").inc()
            logger.warning(
                "pesapal_status_unrecognized",
                tracking_id=tracking_id,
                description=status.payment_status_description,
                status_code=status.status_code,
            )
            raise
        metrics.status_checks_total.labels(outcome=outcome.value).inc()

        logger.info(
            "pesapal_status_checked",
            tracking_id=tracking_id,
            description=status.payment_status_description,
            status_code=status.status_code,
            outcome=outcome.value,
        )

        if not outcome.is_terminal:
            return ReconcileResult(tracking_id=tracking_id, outcome=outcome, order=order)

        if order is None:
            logger.warning(
                "pesapal_status_for_unknown_order",
                tracking_id=tracking_id,
                outcome=outcome.value,
                merchant_reference=status.merchant_reference,
            )
            return ReconcileResult(tracking_id=tracking_id, outcome=outcome, order=None)

        if (
            outcome == PaymentOutcome.CONFIRMED
            and status.amount is not None
            and status.amount != order.amount
        ):
            logger.warning(
                "payment_amount_mismatch",
                order_id=order.order_id,
                expected=str(order.amount),
                reported=str(status.amount),
            )

        order = await self.ledger.finalize(order.order_id, outcome.to_order_status(), status)

        if outcome == PaymentOutcome.CONFIRMED:
            order = await self._grant(order)

        return ReconcileResult(tracking_id=tracking_id, outcome=outcome, order=order)

    async def poll(
        self,
        tracking_id: str,
        cancel: CancellationToken | None = None,
    ) -> ReconcileResult:
        """
        Check repeatedly until a terminal outcome, cancellation or the poll budget runs out.

        Transient StatusCheckErrors are retried with backoff and leave the order
        pending; after `max_consecutive_errors` in a row the last one is raised.
        Exhausting attempts or wall-clock time returns outcome EXPIRED.
        """
        cancel = cancel or CancellationToken()
        started = self._clock()
        attempts = 0
        consecutive_errors = 0
        last_order: PaymentOrderData | None = None

        while True:
            if cancel.cancelled:
                return self._cancelled(tracking_id, last_order, attempts)

            attempts += 1
            metrics.poll_attempts_total.inc()
            try:
                result = await self.check_once(tracking_id)
            except StatusCheckError as exc:
                consecutive_errors += 1
                logger.warning(
                    "payment_status_check_retry",
                    tracking_id=tracking_id,
                    attempt=attempts,
                    consecutive_errors=consecutive_errors,
                    error=exc.message,
                )
                if consecutive_errors >= self.policy.max_consecutive_errors:
                    raise
                delay = self.policy.error_delay(consecutive_errors)
            else:
                if result.outcome.is_terminal:
                    return replace(result, attempts=attempts)
                consecutive_errors = 0
                last_order = result.order
                delay = self.policy.interval_seconds

            elapsed = self._clock() - started
            if attempts >= self.policy.max_attempts or elapsed + delay > self.policy.timeout_seconds:
                metrics.polls_expired_total.inc()
                logger.warning(
                    "payment_poll_expired",
                    tracking_id=tracking_id,
                    attempts=attempts,
                    elapsed_seconds=round(elapsed, 3),
                )
                return ReconcileResult(
                    tracking_id=tracking_id,
                    outcome=PaymentOutcome.EXPIRED,
                    order=last_order,
                    attempts=attempts,
                )

            if await cancel.wait(delay):
                return self._cancelled(tracking_id, last_order, attempts)

    async def _grant(self, order: PaymentOrderData) -> PaymentOrderData:
        """Activate the entitlement for a confirmed order; mark divergence on failure."""
        try:
            await self.activator.activate(order)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            metrics.divergences_total.inc()
            logger.critical(
                "payment_reconciliation_divergence",
                order_id=order.order_id,
                user_id=order.user_id,
                plan_id=order.plan_id,
                amount=str(order.amount),
                reason=reason,
            )
            try:
                await self.ledger.mark_divergence(order.order_id, reason)
            except Exception:
                logger.exception("payment_divergence_marker_failed", order_id=order.order_id)
            raise ReconciliationDivergence(order.order_id, order.user_id, reason) from exc

        if order.has_divergence:
            order = await self.ledger.clear_divergence(order.order_id)
        return order

    def _cancelled(
        self, tracking_id: str, order: PaymentOrderData | None, attempts: int
    ) -> ReconcileResult:
        logger.info("payment_poll_cancelled", tracking_id=tracking_id, attempts=attempts)
        return ReconcileResult(
            tracking_id=tracking_id,
            outcome=PaymentOutcome.CHECKING,
            order=order,
            attempts=attempts,
            cancelled=True,
        )

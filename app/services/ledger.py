"""
Payment Ledger - local record of every payment attempt.

State machine per order:
    pending -> confirmed | failed | cancelled | invalid   (exactly once)

All mutations follow the write-verification pattern:
1. Lock the row (SELECT ... FOR UPDATE)
2. Check the transition is legal
3. Write and flush
4. Commit
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import PaymentOrder
from app.exceptions import (
    ConflictError,
    OrderNotFoundError,
    StateError,
    WriteVerificationError,
)
from app.models.api import BillingCycle, OrderStatus
from app.models.domain import (
    BillingSnapshot,
    OrderPayload,
    PaymentOrderData,
    Reservation,
    TransactionStatus,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def to_order_data(row: PaymentOrder) -> PaymentOrderData:
    """Convert an ORM row to an immutable snapshot."""
    return PaymentOrderData(
        order_id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        plan_name=row.plan_name,
        amount=row.amount,
        currency=row.currency,
        billing_cycle=BillingCycle(row.billing_cycle),
        status=OrderStatus(row.status),
        tracking_id=row.provider_tracking_id,
        merchant_reference=row.merchant_reference,
        billing=BillingSnapshot(
            first_name=row.billing_first_name,
            last_name=row.billing_last_name,
            email=row.billing_email,
            phone=row.billing_phone,
            address=row.billing_address,
            city=row.billing_city,
            state=row.billing_state,
            postal_code=row.billing_postal_code,
        ),
        payment_method=row.payment_method,
        confirmation_code=row.confirmation_code,
        divergence_reason=row.divergence_reason,
        created_at=row.created_at,
        finalized_at=row.finalized_at,
    )


class PaymentLedger:
    """Persistence and state transitions for payment orders."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    async def create(
        self,
        payload: OrderPayload,
        reservation: Reservation,
        billing: BillingSnapshot,
    ) -> PaymentOrderData:
        """
        Record a new pending order.

        Raises:
            ConflictError: Order id already exists
            WriteVerificationError: Row not readable after insert
        """
        if await self.session.get(PaymentOrder, payload.order_id) is not None:
            logger.error("payment_order_id_conflict", order_id=payload.order_id)
            raise ConflictError(payload.order_id)

        row = PaymentOrder(
            id=payload.order_id,
            user_id=reservation.user_id,
            plan_id=reservation.plan.plan_id,
            plan_name=reservation.plan.name,
            billing_cycle=reservation.billing_cycle.value,
            amount=payload.amount,
            currency=payload.currency,
            status=OrderStatus.PENDING.value,
            billing_first_name=billing.first_name,
            billing_last_name=billing.last_name,
            billing_email=billing.email,
            billing_phone=billing.phone,
            billing_address=billing.address,
            billing_city=billing.city,
            billing_state=billing.state,
            billing_postal_code=billing.postal_code,
            activation_attempts=0,
        )
        self.session.add(row)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.error("payment_order_insert_conflict", order_id=payload.order_id, error=str(exc))
            raise ConflictError(payload.order_id) from exc

        verified = await self.session.get(PaymentOrder, payload.order_id)
        if verified is None:
            raise WriteVerificationError(f"Payment order {payload.order_id} not found after insert")

        await self.session.commit()

        metrics.orders_created_total.labels(plan_id=reservation.plan.plan_id).inc()
        logger.info(
            "payment_order_created",
            order_id=payload.order_id,
            user_id=reservation.user_id,
            amount=str(payload.amount),
            currency=payload.currency,
        )
        return to_order_data(verified)

    async def attach_tracking_id(
        self,
        order_id: str,
        tracking_id: str,
        merchant_reference: str,
    ) -> PaymentOrderData:
        """
        Attach the PesaPal tracking id to a pending order.

        Re-attaching the same tracking id is a no-op.

        Raises:
            OrderNotFoundError: Unknown order
            StateError: Order is terminal or already tracks a different id
        """
        row = await self._lock_order(order_id)

        if row.provider_tracking_id == tracking_id:
            return to_order_data(row)

        if OrderStatus(row.status).is_terminal:
            self._log_violation(order_id, row.status, "attach_tracking_id")
            raise StateError(order_id, row.status, "attach_tracking_id")

        if row.provider_tracking_id is not None:
            self._log_violation(order_id, row.status, "replace_tracking_id")
            raise StateError(order_id, row.status, "replace_tracking_id")

        row.provider_tracking_id = tracking_id
        row.merchant_reference = merchant_reference
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "payment_order_tracking_attached",
            order_id=order_id,
            tracking_id=tracking_id,
            merchant_reference=merchant_reference,
        )
        return to_order_data(row)

    async def finalize(
        self,
        order_id: str,
        status: OrderStatus,
        details: TransactionStatus | None = None,
    ) -> PaymentOrderData:
        """
        Move a pending order to a terminal status.

        Finalizing a terminal order to the status it already has is a no-op;
        any other transition out of a terminal status is rejected.

        Raises:
            OrderNotFoundError: Unknown order
            StateError: Illegal transition
        """
        if not status.is_terminal:
            raise StateError(order_id, "?", status.value)

        row = await self._lock_order(order_id)
        current = OrderStatus(row.status)

        if current == status:
            logger.info("payment_order_finalize_noop", order_id=order_id, status=status.value)
            return to_order_data(row)

        if current.is_terminal:
            self._log_violation(order_id, current.value, status.value)
            raise StateError(order_id, current.value, status.value)

        row.status = status.value
        row.finalized_at = _utc_now()
        if details is not None:
            row.provider_status = details.payment_status_description or None
            row.provider_status_code = details.status_code
            row.payment_method = details.payment_method
            row.payment_account = details.payment_account
            row.confirmation_code = details.confirmation_code

        await self.session.flush()
        await self.session.commit()

        metrics.orders_finalized_total.labels(status=status.value).inc()
        logger.info(
            "payment_order_finalized",
            order_id=order_id,
            user_id=row.user_id,
            status=status.value,
            tracking_id=row.provider_tracking_id,
        )
        return to_order_data(row)

    async def mark_divergence(self, order_id: str, reason: str) -> PaymentOrderData:
        """
        Flag a confirmed order whose entitlement could not be granted.

        Raises:
            OrderNotFoundError: Unknown order
            StateError: Order is not confirmed
        """
        row = await self._lock_order(order_id)
        if row.status != OrderStatus.CONFIRMED.value:
            self._log_violation(order_id, row.status, "mark_divergence")
            raise StateError(order_id, row.status, "mark_divergence")

        row.divergence_reason = reason
        if row.divergence_detected_at is None:
            row.divergence_detected_at = _utc_now()
        row.activation_attempts = (row.activation_attempts or 0) + 1

        await self.session.flush()
        await self.session.commit()
        return to_order_data(row)

    async def clear_divergence(self, order_id: str) -> PaymentOrderData:
        """Remove the divergence marker once the entitlement has been granted."""
        row = await self._lock_order(order_id)
        if row.divergence_reason is None:
            return to_order_data(row)

        row.divergence_reason = None
        row.divergence_detected_at = None
        await self.session.flush()
        await self.session.commit()

        logger.info("payment_divergence_cleared", order_id=order_id, user_id=row.user_id)
        return to_order_data(row)

    async def get(self, order_id: str) -> PaymentOrderData:
        """
        Get an order by id.

        Raises:
            OrderNotFoundError: Unknown order
        """
        row = await self.session.get(PaymentOrder, order_id)
        if row is None:
            raise OrderNotFoundError(order_id)
        return to_order_data(row)

    async def find_by_tracking_id(self, tracking_id: str) -> PaymentOrderData | None:
        """Get the order carrying a PesaPal tracking id, if any."""
        stmt = select(PaymentOrder).where(PaymentOrder.provider_tracking_id == tracking_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return to_order_data(row) if row is not None else None

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[PaymentOrderData]:
        """Payment history of a user, newest first."""
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.user_id == user_id)
            .order_by(PaymentOrder.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order_data(row) for row in result.scalars().all()]

    async def list_divergent(self, limit: int = 100) -> list[PaymentOrderData]:
        """Confirmed orders still waiting for their entitlement."""
        stmt = (
            select(PaymentOrder)
            .where(
                PaymentOrder.status == OrderStatus.CONFIRMED.value,
                PaymentOrder.divergence_reason.isnot(None),
            )
            .order_by(PaymentOrder.divergence_detected_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order_data(row) for row in result.scalars().all()]

    async def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[PaymentOrderData]:
        """Pending orders with a tracking id that have not settled since `older_than`."""
        stmt = (
            select(PaymentOrder)
            .where(
                PaymentOrder.status == OrderStatus.PENDING.value,
                PaymentOrder.provider_tracking_id.isnot(None),
                PaymentOrder.created_at < older_than,
            )
            .order_by(PaymentOrder.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [to_order_data(row) for row in result.scalars().all()]

    async def _lock_order(self, order_id: str) -> PaymentOrder:
        """Lock an order row for update."""
        stmt = select(PaymentOrder).where(PaymentOrder.id == order_id).with_for_update()
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise OrderNotFoundError(order_id)
        return row

    def _log_violation(self, order_id: str, current: str, requested: str) -> None:
        metrics.record_error("StateError", "ledger")
        logger.error(
            "payment_state_violation",
            order_id=order_id,
            current=current,
            requested=requested,
        )

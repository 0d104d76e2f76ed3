"""
Entitlement Activator - grants the subscription a confirmed payment paid for.

Only ever called for orders the ledger has already confirmed. Activation
is idempotent per payment order: a SubscriptionRecord is written once per
order and a repeated call returns the current entitlement unchanged.
"""

import calendar
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import SubscriptionRecord, UserSubscription
from app.exceptions import StateError
from app.models.api import BillingCycle, OrderStatus, SubscriptionStatus, SubscriptionTier
from app.models.domain import EntitlementData, PaymentOrderData
from app.services.plans import get_plan

logger = get_logger(__name__)

PAYMENT_METHOD = "pesapal"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_billing_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Add one calendar month or year, clamping to the last day of the target month."""
    if cycle == BillingCycle.YEARLY:
        year, month = start.year + 1, start.month
    else:
        year = start.year + (start.month // 12)
        month = start.month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _to_entitlement(user_id: str, sub: UserSubscription | None, now: datetime) -> EntitlementData:
    if sub is None:
        return EntitlementData(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            status=SubscriptionStatus.INACTIVE,
            billing_cycle=None,
            end_date=None,
        )

    status = SubscriptionStatus(sub.status)
    if status == SubscriptionStatus.ACTIVE and sub.end_date is not None and sub.end_date <= now:
        status = SubscriptionStatus.INACTIVE

    return EntitlementData(
        user_id=user_id,
        tier=SubscriptionTier(sub.tier),
        status=status,
        billing_cycle=BillingCycle(sub.billing_cycle) if sub.billing_cycle else None,
        end_date=sub.end_date,
    )


class EntitlementActivator:
    """Flips a user's subscription tier/status for a confirmed payment."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize activator with database session."""
        self.session = session

    async def activate(self, order: PaymentOrderData) -> EntitlementData:
        """
        Activate the plan bought by a confirmed order.

        Raises:
            StateError: Order is not confirmed
            PlanNotFoundError: Order references an unknown plan
            SQLAlchemyError: Database failure (session rolled back)
        """
        if order.status != OrderStatus.CONFIRMED:
            logger.error(
                "payment_state_violation",
                order_id=order.order_id,
                current=order.status.value,
                requested="activate",
            )
            raise StateError(order.order_id, order.status.value, "activate")

        plan = get_plan(order.plan_id)
        now = _utc_now()

        try:
            if await self._has_record(order.order_id):
                logger.info("entitlement_already_granted", order_id=order.order_id)
                return await self.get_entitlement(order.user_id)

            result = await self.session.execute(
                select(UserSubscription)
                .where(UserSubscription.user_id == order.user_id)
                .with_for_update()
            )
            sub = result.scalar_one_or_none()

            start = now
            if (
                sub is not None
                and sub.status == SubscriptionStatus.ACTIVE.value
                and sub.tier == plan.tier.value
                and sub.end_date is not None
                and sub.end_date > now
            ):
                start = sub.end_date
            end_date = add_billing_cycle(start, order.billing_cycle)

            if sub is None:
                sub = UserSubscription(user_id=order.user_id)
                self.session.add(sub)

            sub.tier = plan.tier.value
            sub.status = SubscriptionStatus.ACTIVE.value
            sub.billing_cycle = order.billing_cycle.value
            sub.end_date = end_date
            sub.payment_method = PAYMENT_METHOD
            sub.last_payment_order_id = order.order_id

            self.session.add(
                SubscriptionRecord(
                    user_id=order.user_id,
                    plan_id=plan.plan_id,
                    billing_cycle=order.billing_cycle.value,
                    amount=order.amount,
                    currency=order.currency,
                    payment_method=PAYMENT_METHOD,
                    payment_order_id=order.order_id,
                    start_date=start,
                    end_date=end_date,
                )
            )

            await self.session.flush()
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            # A concurrent check of the same order inserted its record first
            if not await self._has_record(order.order_id):
                raise
            logger.info("entitlement_already_granted", order_id=order.order_id, concurrent=True)
            return await self.get_entitlement(order.user_id)
        except SQLAlchemyError:
            await self.session.rollback()
            raise

        logger.info(
            "entitlement_activated",
            order_id=order.order_id,
            user_id=order.user_id,
            tier=plan.tier.value,
            end_date=end_date.isoformat(),
        )
        return EntitlementData(
            user_id=order.user_id,
            tier=plan.tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=order.billing_cycle,
            end_date=end_date,
        )

    async def _has_record(self, order_id: str) -> bool:
        result = await self.session.execute(
            select(SubscriptionRecord).where(SubscriptionRecord.payment_order_id == order_id)
        )
        return result.scalar_one_or_none() is not None

    async def get_entitlement(self, user_id: str) -> EntitlementData:
        """Current entitlement of a user (free/inactive if never subscribed)."""
        sub = await self.session.get(UserSubscription, user_id)
        return _to_entitlement(user_id, sub, _utc_now())

"""
Subscription plan catalog.

Prices are in the payment currency (ZMW) and must match the plans shown
on the ZedQuiz subscription page.
"""

from decimal import Decimal

from app.exceptions import PlanNotFoundError, ValidationError
from app.models.api import BillingCycle, SubscriptionTier
from app.models.domain import Reservation, SubscriptionPlan

SUBSCRIPTION_PLANS: dict[str, SubscriptionPlan] = {
    "free": SubscriptionPlan(
        plan_id="free",
        name="Free",
        tier=SubscriptionTier.FREE,
        price_monthly=Decimal("0.00"),
        price_yearly=Decimal("0.00"),
    ),
    "premium": SubscriptionPlan(
        plan_id="premium",
        name="Premium",
        tier=SubscriptionTier.PREMIUM,
        price_monthly=Decimal("9.99"),
        price_yearly=Decimal("99.99"),
    ),
    "pro": SubscriptionPlan(
        plan_id="pro",
        name="Pro",
        tier=SubscriptionTier.PRO,
        price_monthly=Decimal("19.99"),
        price_yearly=Decimal("199.99"),
    ),
}


def get_plan(plan_id: str) -> SubscriptionPlan:
    """
    Get plan configuration by ID.

    Raises:
        PlanNotFoundError: If plan ID not found
    """
    plan = SUBSCRIPTION_PLANS.get(plan_id.lower())
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


def list_plans() -> list[SubscriptionPlan]:
    """All plans, cheapest first."""
    return sorted(SUBSCRIPTION_PLANS.values(), key=lambda p: p.price_monthly)


def yearly_savings(plan: SubscriptionPlan) -> Decimal:
    """How much a yearly subscription saves over twelve monthly payments."""
    if plan.price_yearly <= 0:
        return Decimal("0.00")
    return max(plan.price_monthly * 12 - plan.price_yearly, Decimal("0.00"))


def reserve(user_id: str, plan_id: str, billing_cycle: BillingCycle) -> Reservation:
    """
    Reserve a paid plan for a user.

    Raises:
        PlanNotFoundError: Unknown plan
        ValidationError: Plan is free and cannot be purchased
    """
    plan = get_plan(plan_id)
    if plan.is_free or plan.price_for(billing_cycle) <= 0:
        raise ValidationError({"plan_id": f"Plan '{plan.plan_id}' cannot be purchased"})
    return Reservation(user_id=user_id, plan=plan, billing_cycle=billing_cycle)

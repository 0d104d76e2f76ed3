"""
Tests for domain models.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from app.models.api import BillingCycle, OrderStatus, PaymentOutcome, SubscriptionTier
from app.models.domain import AuthToken, Reservation, SubscriptionPlan


class TestSubscriptionPlan:
    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            SubscriptionPlan(
                plan_id="bad",
                name="Bad",
                tier=SubscriptionTier.PREMIUM,
                price_monthly=Decimal("-1"),
                price_yearly=Decimal("0"),
            )

    def test_free_plan(self):
        plan = SubscriptionPlan(
            plan_id="free",
            name="Free",
            tier=SubscriptionTier.FREE,
            price_monthly=Decimal("0"),
            price_yearly=Decimal("0"),
        )
        assert plan.is_free


class TestReservation:
    def test_empty_user_rejected(self):
        plan = SubscriptionPlan(
            plan_id="premium",
            name="Premium",
            tier=SubscriptionTier.PREMIUM,
            price_monthly=Decimal("9.99"),
            price_yearly=Decimal("99.99"),
        )
        with pytest.raises(ValueError):
            Reservation(user_id="", plan=plan, billing_cycle=BillingCycle.MONTHLY)


class TestAuthToken:
    def test_validity(self):
        now = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        token = AuthToken(token="t", expires_at=now + timedelta(minutes=5))
        assert token.is_valid(now)
        assert not token.is_valid(now + timedelta(minutes=5))


class TestStatusEnums:
    def test_only_pending_is_open(self):
        assert [s for s in OrderStatus if not s.is_terminal] == [OrderStatus.PENDING]

    @pytest.mark.parametrize(
        ("outcome", "status"),
        [
            (PaymentOutcome.CONFIRMED, OrderStatus.CONFIRMED),
            (PaymentOutcome.FAILED, OrderStatus.FAILED),
            (PaymentOutcome.CANCELLED, OrderStatus.CANCELLED),
            (PaymentOutcome.INVALID, OrderStatus.INVALID),
        ],
    )
    def test_terminal_outcomes_map_to_ledger_status(self, outcome: PaymentOutcome, status: OrderStatus):
        assert outcome.to_order_status() == status

    @pytest.mark.parametrize("outcome", [PaymentOutcome.CHECKING, PaymentOutcome.EXPIRED])
    def test_open_outcomes_have_no_ledger_status(self, outcome: PaymentOutcome):
        with pytest.raises(ValueError):
            outcome.to_order_status()

"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from app.models.api import (
    BillingCycle,
    OrderStatus,
    PaymentOutcome,
    SubscriptionStatus,
    SubscriptionTier,
)


@dataclass(frozen=True)
class SubscriptionPlan:
    """A purchasable subscription plan."""

    plan_id: str
    name: str
    tier: SubscriptionTier
    price_monthly: Decimal
    price_yearly: Decimal

    def __post_init__(self) -> None:
        """Validate plan pricing."""
        if self.price_monthly < 0 or self.price_yearly < 0:
            raise ValueError(f"Plan prices cannot be negative: {self.plan_id}")
        if not self.plan_id:
            raise ValueError("Plan ID required")

    @property
    def is_free(self) -> bool:
        return self.price_monthly == 0 and self.price_yearly == 0

    def price_for(self, cycle: BillingCycle) -> Decimal:
        """Price for the given billing cycle."""
        return self.price_yearly if cycle == BillingCycle.YEARLY else self.price_monthly


@dataclass(frozen=True)
class BillingSnapshot:
    """Billing contact captured when the order is created. Never re-derived."""

    first_name: str
    last_name: str
    email: str
    phone: str
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None


@dataclass(frozen=True)
class Reservation:
    """What the user is buying: plan, billing cycle and purchasing user."""

    user_id: str
    plan: SubscriptionPlan
    billing_cycle: BillingCycle

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id cannot be empty")

    @property
    def amount(self) -> Decimal:
        return self.plan.price_for(self.billing_cycle)


@dataclass(frozen=True)
class AuthToken:
    """PesaPal bearer token with its absolute expiry."""

    token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class BillingAddress:
    """Provider billing_address block with defaults already applied."""

    email_address: str
    phone_number: str
    country_code: str
    first_name: str
    last_name: str
    line_1: str
    city: str
    state: str
    postal_code: str

    def to_request(self) -> dict[str, str]:
        return {
            "email_address": self.email_address,
            "phone_number": self.phone_number,
            "country_code": self.country_code,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "line_1": self.line_1,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "zip_code": self.postal_code,
        }


@dataclass(frozen=True)
class OrderPayload:
    """A built order, ready for submission to PesaPal."""

    order_id: str
    merchant_reference: str
    amount: Decimal
    currency: str
    description: str
    callback_url: str
    billing_address: BillingAddress

    def to_request(self, notification_id: str) -> dict[str, Any]:
        """Render the SubmitOrderRequest JSON body."""
        return {
            "id": self.order_id,
            "currency": self.currency,
            "amount": float(self.amount),
            "description": self.description,
            "callback_url": self.callback_url,
            "notification_id": notification_id,
            "billing_address": self.billing_address.to_request(),
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Successful order submission."""

    redirect_url: str
    tracking_id: str
    merchant_reference: str


@dataclass(frozen=True)
class SubmissionFailure:
    """Failed order submission. The order must not be resubmitted as-is."""

    message: str
    retryable: bool = True


@dataclass(frozen=True)
class TransactionStatus:
    """Authoritative transaction status returned by GetTransactionStatus."""

    tracking_id: str
    payment_status_description: str
    status_code: int | None
    amount: Decimal | None = None
    currency: str | None = None
    payment_method: str | None = None
    payment_account: str | None = None
    confirmation_code: str | None = None
    merchant_reference: str | None = None


@dataclass(frozen=True)
class ConfigValidation:
    """Outcome of the provider configuration check."""

    is_valid: bool
    missing: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentOrderData:
    """Immutable payment order snapshot."""

    order_id: str
    user_id: str
    plan_id: str
    plan_name: str
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    status: OrderStatus
    tracking_id: str | None
    merchant_reference: str | None
    billing: BillingSnapshot
    payment_method: str | None
    confirmation_code: str | None
    divergence_reason: str | None
    created_at: datetime
    finalized_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_divergence(self) -> bool:
        return self.divergence_reason is not None


@dataclass(frozen=True)
class EntitlementData:
    """Current subscription entitlement of a user."""

    user_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    billing_cycle: BillingCycle | None
    end_date: datetime | None


@dataclass(frozen=True)
class InitiatedPayment:
    """A submitted payment awaiting the user at the hosted checkout."""

    order_id: str
    redirect_url: str
    tracking_id: str
    merchant_reference: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one status check or a full poll."""

    tracking_id: str
    outcome: PaymentOutcome
    order: PaymentOrderData | None = None
    attempts: int = 1
    cancelled: bool = False

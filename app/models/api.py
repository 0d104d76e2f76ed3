"""
API Models - Pydantic models for request/response validation.

Billing field *content* (email shape, Zambian phone pattern) is validated by
the order builder so every violation is reported together; these models
only enforce structure and size.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    """Payment order status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INVALID = "invalid"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class BillingCycle(str, Enum):
    """Subscription billing cycle."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionTier(str, Enum):
    """Subscription tier granted to a user."""

    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription status of a user."""

    INACTIVE = "inactive"
    ACTIVE = "active"


class PaymentOutcome(str, Enum):
    """Result of reconciling a tracking id against the provider."""

    CHECKING = "checking"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INVALID = "invalid"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentOutcome.CONFIRMED,
            PaymentOutcome.FAILED,
            PaymentOutcome.CANCELLED,
            PaymentOutcome.INVALID,
        )

    def to_order_status(self) -> OrderStatus:
        """Ledger status for a terminal outcome."""
        if not self.is_terminal:
            raise ValueError(f"{self.value} has no ledger status")
        return OrderStatus(self.value)


# ============================================================================
# Configuration / Catalog Models
# ============================================================================


class ConfigStatusResponse(BaseModel):
    """GET /v1/payments/config response."""

    is_valid: bool
    missing: list[str] = Field(default_factory=list)
    message: str | None = None


class PlanResponse(BaseModel):
    """A purchasable subscription plan."""

    plan_id: str
    name: str
    tier: SubscriptionTier
    currency: str
    price_monthly: Decimal
    price_yearly: Decimal
    yearly_savings: Decimal


class PlanListResponse(BaseModel):
    """GET /v1/payments/plans response."""

    plans: list[PlanResponse]


# ============================================================================
# Order Models
# ============================================================================


class BillingDetails(BaseModel):
    """Billing contact captured on the payment form."""

    first_name: str = Field("", max_length=100)
    last_name: str = Field("", max_length=100)
    email: str = Field("", max_length=255)
    phone: str = Field("", max_length=32)
    address: str | None = Field(None, max_length=255)
    city: str | None = Field(None, max_length=100)
    state: str | None = Field(None, max_length=100)
    postal_code: str | None = Field(None, max_length=20)


class CreatePaymentRequest(BaseModel):
    """POST /v1/payments/orders request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    plan_id: str = Field(..., min_length=1, max_length=50)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    billing: BillingDetails


class CreatePaymentResponse(BaseModel):
    """POST /v1/payments/orders response."""

    order_id: str
    redirect_url: str
    tracking_id: str
    merchant_reference: str
    amount: Decimal
    currency: str


class PaymentOrderResponse(BaseModel):
    """A payment order as seen by the client."""

    order_id: str
    user_id: str
    plan_id: str
    billing_cycle: BillingCycle
    amount: Decimal
    currency: str
    status: OrderStatus
    tracking_id: str | None
    merchant_reference: str | None
    payment_method: str | None = None
    confirmation_code: str | None = None
    created_at: datetime
    finalized_at: datetime | None = None


class PaymentHistoryResponse(BaseModel):
    """GET /v1/payments/users/{user_id}/orders response."""

    orders: list[PaymentOrderResponse]


class PaymentStatusResponse(BaseModel):
    """Result of a status check or poll."""

    tracking_id: str
    outcome: PaymentOutcome
    order_id: str | None = None
    order_status: OrderStatus | None = None
    attempts: int = 1
    cancelled: bool = False
    message: str


class SubscriptionResponse(BaseModel):
    """GET /v1/payments/users/{user_id}/subscription response."""

    user_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    billing_cycle: BillingCycle | None = None
    end_date: datetime | None = None


class IPNAcknowledgement(BaseModel):
    """Acknowledgement returned to PesaPal for every notification."""

    status: str = "200"
    message: str = "IPN received"
    orderNotificationType: str | None = None
    orderTrackingId: str | None = None
    orderMerchantReference: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str

"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PaymentOrder(Base):
    """
    ORM model for payment_orders table.

    One row per payment attempt. Rows are never deleted and form the
    audit trail: created pending, updated once with the tracking id and
    at most once more with a terminal status.
    """

    __tablename__ = "payment_orders"

    # Merchant order id (generated locally, never reused)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # What was bought and by whom
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # Amount fixed at creation
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider_tracking_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    merchant_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Billing snapshot (copied at creation for auditability)
    billing_first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_email: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    billing_state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    billing_postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Provider details captured on finalize
    provider_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    provider_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_account: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confirmation_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Saga marker: confirmed but entitlement not granted
    divergence_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    divergence_detected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    activation_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'cancelled', 'invalid')",
            name="ck_payment_status",
        ),
        CheckConstraint(
            "billing_cycle IN ('monthly', 'yearly')", name="ck_payment_billing_cycle"
        ),
        UniqueConstraint("provider_tracking_id", name="uq_payment_tracking_id"),
        Index("idx_payment_orders_user_id", "user_id"),
        Index("idx_payment_orders_status", "status"),
        Index(
            "idx_payment_orders_divergent",
            "divergence_detected_at",
            postgresql_where=text("divergence_reason IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentOrder(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, tracking_id={self.provider_tracking_id})>"
        )


class UserSubscription(Base):
    """
    ORM model for user_subscriptions table.

    Current entitlement of a user. Only written by the entitlement activator.
    """

    __tablename__ = "user_subscriptions"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="inactive")
    billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_payment_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tier IN ('free', 'premium', 'pro')", name="ck_subscription_tier"),
        CheckConstraint("status IN ('inactive', 'active')", name="ck_subscription_status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserSubscription(user_id={self.user_id}, tier={self.tier}, status={self.status})>"


class SubscriptionRecord(Base):
    """
    ORM model for subscription_records table.

    Immutable history of activations, one per confirmed payment order.
    """

    __tablename__ = "subscription_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="pesapal")
    payment_order_id: Mapped[str] = mapped_column(String(128), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("payment_order_id", name="uq_subscription_record_order"),
        Index("idx_subscription_records_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, plan_id={self.plan_id}, "
            f"payment_order_id={self.payment_order_id})>"
        )

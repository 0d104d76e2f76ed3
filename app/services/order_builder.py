"""
Order Builder - turns a reservation and billing details into a PesaPal order.

Validation is exhaustive: every problem with the billing form is reported
in one ValidationError so the user can fix everything at once.
"""

import re
import secrets
import string
import time
from collections import deque
from decimal import ROUND_HALF_UP, Decimal

from structlog import get_logger

from app.config import Settings
from app.exceptions import ValidationError
from app.models.domain import BillingAddress, BillingSnapshot, OrderPayload, Reservation

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Zambian mobile numbers: +260 or 0 prefix (optional), then 7 or 9, then 8 digits
PHONE_PATTERN = re.compile(r"^(\+260|0)?[79]\d{8}$")

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
# Recently issued ids, oldest evicted first
ORDER_ID_HISTORY_SIZE = 10_000
_recent_order_ids: deque[str] = deque()
_issued_order_ids: set[str] = set()


def normalize_phone(phone: str) -> str:
    """Strip the separators people type into phone numbers."""
    return re.sub(r"[\s\-().]", "", phone)


def validate_billing(billing: BillingSnapshot) -> BillingSnapshot:
    """
    Validate billing fields and return a normalized snapshot.

    Raises:
        ValidationError: With one entry per invalid field
    """
    violations: dict[str, str] = {}

    first_name = billing.first_name.strip()
    last_name = billing.last_name.strip()
    email = billing.email.strip()
    phone = normalize_phone(billing.phone.strip())

    if not first_name:
        violations["first_name"] = "First name is required"
    if not last_name:
        violations["last_name"] = "Last name is required"

    if not email:
        violations["email"] = "Email is required"
    elif not EMAIL_PATTERN.match(email):
        violations["email"] = "Please enter a valid email address"

    if not phone:
        violations["phone"] = "Phone number is required"
    elif not PHONE_PATTERN.match(phone):
        violations["phone"] = "Please enter a valid Zambian phone number"

    if violations:
        logger.info("billing_validation_failed", fields=sorted(violations))
        raise ValidationError(violations)

    return BillingSnapshot(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        address=(billing.address or "").strip() or None,
        city=(billing.city or "").strip() or None,
        state=(billing.state or "").strip() or None,
        postal_code=(billing.postal_code or "").strip() or None,
    )


def format_amount(amount: Decimal | float | str) -> Decimal:
    """Round an amount to two decimal places as PesaPal expects."""
    return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _remember_order_id(order_id: str) -> None:
    if len(_recent_order_ids) >= ORDER_ID_HISTORY_SIZE:
        _issued_order_ids.discard(_recent_order_ids.popleft())
    _recent_order_ids.append(order_id)
    _issued_order_ids.add(order_id)


def generate_order_id(user_id: str, plan_id: str, prefix: str = "ZEDQUIZ") -> str:
    """
    Mint a merchant order id not among those recently issued by this process.

    Older ids are forgotten; the ledger's unique order id still rejects a repeat.

    Format: PREFIX-<user id fragment>-<plan>-<epoch ms>-<random base36>, upper-cased.
    """
    while True:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
        order_id = f"{prefix}-{user_id[:8]}-{plan_id}-{time.time_ns() // 1_000_000}-{suffix}".upper()
        if order_id not in _issued_order_ids:
            _remember_order_id(order_id)
            return order_id


def build_order(
    reservation: Reservation,
    billing: BillingSnapshot,
    settings: Settings,
) -> tuple[OrderPayload, BillingSnapshot]:
    """
    Build a provider order for a reservation.

    Every call mints a new order id, so a retry after a failed submission
    never reuses the failed attempt's id.

    Returns:
        The order payload and the validated billing snapshot to persist

    Raises:
        ValidationError: Billing details invalid
    """
    snapshot = validate_billing(billing)

    order_id = generate_order_id(
        reservation.user_id, reservation.plan.plan_id, settings.order_id_prefix
    )
    amount = format_amount(reservation.amount)

    address = BillingAddress(
        email_address=snapshot.email,
        phone_number=snapshot.phone,
        country_code=settings.payment_country_code,
        first_name=snapshot.first_name,
        last_name=snapshot.last_name,
        line_1=snapshot.address or settings.default_billing_address,
        city=snapshot.city or settings.default_billing_city,
        state=snapshot.state or settings.default_billing_state,
        postal_code=snapshot.postal_code or settings.default_billing_postal_code,
    )

    payload = OrderPayload(
        order_id=order_id,
        merchant_reference=order_id,
        amount=amount,
        currency=settings.payment_currency,
        description=f"ZedQuiz {reservation.plan.name} Subscription",
        callback_url=settings.pesapal_callback_url,
        billing_address=address,
    )

    logger.info(
        "payment_order_built",
        order_id=order_id,
        user_id=reservation.user_id,
        plan_id=reservation.plan.plan_id,
        billing_cycle=reservation.billing_cycle.value,
        amount=str(amount),
    )
    return payload, snapshot

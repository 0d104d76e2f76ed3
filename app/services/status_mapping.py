"""
PesaPal status vocabulary -> PaymentOutcome.

The table is total over every status string we know PesaPal (or the
hosted checkout) can report. Anything else is a StatusCheckError so an
unexpected string is retried and surfaced instead of polled forever.
"""

from app.exceptions import StatusCheckError
from app.models.api import PaymentOutcome

PROVIDER_STATUS_MAP: dict[str, PaymentOutcome] = {
    # confirmed
    "COMPLETED": PaymentOutcome.CONFIRMED,
    "COMPLETE": PaymentOutcome.CONFIRMED,
    "COMPLETED_PAYMENT": PaymentOutcome.CONFIRMED,
    "PAID": PaymentOutcome.CONFIRMED,
    "SUCCESS": PaymentOutcome.CONFIRMED,
    "SUCCESSFUL": PaymentOutcome.CONFIRMED,
    # still in progress
    "PENDING": PaymentOutcome.CHECKING,
    "PROCESSING": PaymentOutcome.CHECKING,
    "IN_PROGRESS": PaymentOutcome.CHECKING,
    "INPROGRESS": PaymentOutcome.CHECKING,
    "AWAITING_PAYMENT": PaymentOutcome.CHECKING,
    # failed
    "FAILED": PaymentOutcome.FAILED,
    "FAILURE": PaymentOutcome.FAILED,
    "DECLINED": PaymentOutcome.FAILED,
    "REVERSED": PaymentOutcome.FAILED,
    "REFUNDED": PaymentOutcome.FAILED,
    # cancelled
    "CANCELLED": PaymentOutcome.CANCELLED,
    "CANCELED": PaymentOutcome.CANCELLED,
    # invalid
    "INVALID": PaymentOutcome.INVALID,
}

# PesaPal v3 status_code: 0 INVALID, 1 COMPLETED, 2 FAILED, 3 REVERSED
PROVIDER_STATUS_CODE_MAP: dict[int, PaymentOutcome] = {
    0: PaymentOutcome.INVALID,
    1: PaymentOutcome.CONFIRMED,
    2: PaymentOutcome.FAILED,
    3: PaymentOutcome.FAILED,
}


def normalize_status(description: str) -> str:
    """Upper-case and join words with underscores ("Completed payment" -> "COMPLETED_PAYMENT")."""
    return "_".join(description.strip().upper().replace("-", " ").split())


def map_provider_status(
    description: str | None,
    status_code: int | None = None,
    tracking_id: str = "",
) -> PaymentOutcome:
    """
    Map a provider status onto a PaymentOutcome.

    The description wins; the numeric code is used only when the
    description is empty.

    Raises:
        StatusCheckError: Status is not in the vocabulary
    """
    key = normalize_status(description or "")
    if key:
        outcome = PROVIDER_STATUS_MAP.get(key)
        if outcome is None:
            raise StatusCheckError(tracking_id, f"unrecognized provider status '{description}'")
        return outcome

    if status_code is not None:
        outcome = PROVIDER_STATUS_CODE_MAP.get(status_code)
        if outcome is None:
            raise StatusCheckError(tracking_id, f"unrecognized provider status code {status_code}")
        return outcome

    raise StatusCheckError(tracking_id, "provider returned no status")

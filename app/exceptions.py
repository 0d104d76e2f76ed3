"""
Exception Classes - Strongly typed exception hierarchy.

Every error carries typed attributes plus a `user_message` that is safe
to show to the user. Internal detail stays in `str(exc)`.
"""

GENERIC_SUPPORT_MESSAGE = "Something went wrong with your payment. Please contact support."


class PaymentError(Exception):
    """Base exception for all payment errors."""

    user_message: str = GENERIC_SUPPORT_MESSAGE


class ConfigError(PaymentError):
    """Raised when required PesaPal credentials are missing."""

    user_message = "Payment system not properly configured. Please contact support."

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Payment provider misconfigured, missing: {', '.join(missing)}")


class AuthError(PaymentError):
    """Raised when the provider rejects our credentials or the token call fails."""

    user_message = "The payment system is unavailable right now. Please try again shortly."

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"PesaPal authentication failed: {message}")


class ValidationError(PaymentError):
    """Raised when billing details fail validation. Lists every violation."""

    user_message = "Please correct the highlighted payment details."

    def __init__(self, violations: dict[str, str]) -> None:
        self.violations = violations
        details = "; ".join(f"{field}: {reason}" for field, reason in violations.items())
        super().__init__(f"Invalid billing details: {details}")

    @property
    def fields(self) -> list[str]:
        """Names of the fields that failed validation."""
        return list(self.violations)


class SubmissionError(PaymentError):
    """Raised when the provider rejects an order or cannot be reached."""

    user_message = "We could not start your payment. Please try again."

    def __init__(self, message: str, order_id: str | None = None) -> None:
        self.message = message
        self.order_id = order_id
        self.retryable = True
        super().__init__(f"Order submission failed: {message}")


class StatusCheckError(PaymentError):
    """Raised when a status query fails transiently or returns an unknown status."""

    user_message = "We could not confirm your payment yet. Please check again shortly."

    def __init__(self, tracking_id: str, message: str) -> None:
        self.tracking_id = tracking_id
        self.message = message
        super().__init__(f"Status check failed for {tracking_id}: {message}")


class StateError(PaymentError):
    """Raised on an illegal payment order state transition (programming error)."""

    def __init__(self, order_id: str, current: str, requested: str) -> None:
        self.order_id = order_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Illegal transition for order {order_id}: {current} -> {requested}"
        )


class ConflictError(PaymentError):
    """Raised when a payment order id already exists."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Payment order already exists: {order_id}")


class OrderNotFoundError(PaymentError):
    """Raised when a payment order cannot be found."""

    user_message = "We could not find that payment."

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Payment order not found: {reference}")


class PlanNotFoundError(PaymentError):
    """Raised when a subscription plan id is unknown."""

    user_message = "That subscription plan is not available."

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Subscription plan not found: {plan_id}")


class ReconciliationDivergence(PaymentError):
    """Raised when a confirmed payment could not be turned into an entitlement."""

    def __init__(self, order_id: str, user_id: str, reason: str) -> None:
        self.order_id = order_id
        self.user_id = user_id
        self.reason = reason
        super().__init__(
            f"Order {order_id} confirmed but entitlement for user {user_id} failed: {reason}"
        )


class WriteVerificationError(PaymentError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")

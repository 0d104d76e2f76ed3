"""
Tests for exception classes.

Covers typed attributes, messages and user-facing text.
"""

import pytest

from app.exceptions import (
    GENERIC_SUPPORT_MESSAGE,
    AuthError,
    ConfigError,
    ConflictError,
    OrderNotFoundError,
    PaymentError,
    PlanNotFoundError,
    ReconciliationDivergence,
    StateError,
    StatusCheckError,
    SubmissionError,
    ValidationError,
    WriteVerificationError,
)


class TestPaymentError:
    """Tests for base PaymentError."""

    def test_is_exception(self):
        assert issubclass(PaymentError, Exception)

    def test_default_user_message_is_generic(self):
        assert PaymentError("boom").user_message == GENERIC_SUPPORT_MESSAGE

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigError(["PESAPAL_CONSUMER_KEY"]),
            AuthError("bad credentials"),
            ValidationError({"email": "Email is required"}),
            SubmissionError("rejected"),
            StatusCheckError("track-1", "timeout"),
            StateError("order-1", "confirmed", "failed"),
            ConflictError("order-1"),
            OrderNotFoundError("order-1"),
            PlanNotFoundError("gold"),
            ReconciliationDivergence("order-1", "user-1", "db down"),
            WriteVerificationError("missing row"),
        ],
    )
    def test_every_error_is_payment_error(self, exc: PaymentError):
        assert isinstance(exc, PaymentError)
        assert exc.user_message


class TestConfigError:
    def test_lists_missing_fields(self):
        exc = ConfigError(["PESAPAL_CONSUMER_KEY", "PESAPAL_CONSUMER_SECRET"])
        assert exc.missing == ["PESAPAL_CONSUMER_KEY", "PESAPAL_CONSUMER_SECRET"]
        assert "PESAPAL_CONSUMER_KEY" in str(exc)
        assert "PESAPAL_CONSUMER_SECRET" in str(exc)

    def test_user_message_does_not_leak_field_names(self):
        exc = ConfigError(["PESAPAL_CONSUMER_SECRET"])
        assert "SECRET" not in exc.user_message


class TestValidationError:
    def test_reports_every_field(self):
        exc = ValidationError({"phone": "Phone number is required", "email": "invalid"})
        assert set(exc.fields) == {"phone", "email"}
        assert "phone" in str(exc)
        assert "email" in str(exc)


class TestSubmissionError:
    def test_is_retryable_and_keeps_order_id(self):
        exc = SubmissionError("duplicate order", order_id="ZEDQUIZ-1")
        assert exc.retryable is True
        assert exc.order_id == "ZEDQUIZ-1"
        assert "duplicate order" in str(exc)


class TestStateError:
    def test_message_shows_transition(self):
        exc = StateError("order-1", "confirmed", "failed")
        assert exc.current == "confirmed"
        assert exc.requested == "failed"
        assert "confirmed -> failed" in str(exc)

    def test_user_message_is_generic(self):
        assert StateError("o", "a", "b").user_message == GENERIC_SUPPORT_MESSAGE


class TestReconciliationDivergence:
    def test_attributes(self):
        exc = ReconciliationDivergence("order-1", "user-1", "OperationalError: db down")
        assert exc.order_id == "order-1"
        assert exc.user_id == "user-1"
        assert "db down" in str(exc)
        assert exc.user_message == GENERIC_SUPPORT_MESSAGE

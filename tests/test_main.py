"""
Tests for Main Application and observability helpers.
"""

from fastapi.testclient import TestClient

from app.observability.logging import mask_value, redact_sensitive
from app.observability.tracing import add_span_attributes, trace_operation


class TestApplication:
    def test_root(self, client: TestClient):
        data = client.get("/").json()
        assert data["status"] == "running"
        assert data["service"] == "ZedQuiz Payments API"

    def test_metrics_endpoint(self, client: TestClient):
        client.get("/")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "payments_http_requests_total" in response.text

    def test_request_validation_errors_are_sanitized(self, client: TestClient):
        response = client.post("/v1/payments/orders", json={"user_id": ""})
        assert response.status_code == 422
        assert all("loc" in err for err in response.json()["detail"])


class TestRedaction:
    """Tests for log redaction of credentials and contact details."""

    def test_mask_keeps_last_four(self):
        assert mask_value("0971234567") == "******4567"

    def test_mask_short_values(self):
        assert mask_value("abc") == "****"

    def test_redacts_sensitive_keys(self):
        event = redact_sensitive(
            None,
            "info",
            {
                "event": "pesapal_token_refreshed",
                "token": "eyJhbGciOiJIUzI1NiJ9",
                "email": "mwila@example.com",
                "order_id": "ZEDQUIZ-1",
                "phone": None,
            },
        )
        assert event["token"].endswith("NiJ9")
        assert "eyJ" not in event["token"]
        assert event["email"] == "*" * 13 + ".com"
        assert event["order_id"] == "ZEDQUIZ-1"
        assert event["phone"] is None


class TestTracing:
    def test_trace_operation_yields_span(self):
        with trace_operation("pesapal.get_transaction_status", tracking_id="track-001") as span:
            assert span is not None

    def test_add_span_attributes_skips_none(self):
        recorded = {}

        class FakeSpan:
            def set_attribute(self, key, value):
                recorded[key] = value

        add_span_attributes(FakeSpan(), order_id="ZEDQUIZ-1", attempts=3, amount=None, plan=["x"])

        assert recorded == {"order_id": "ZEDQUIZ-1", "attempts": 3, "plan": "['x']"}

"""
Tests for the PesaPal API client.

Uses httpx.MockTransport so no request leaves the process.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from app.exceptions import AuthError, StatusCheckError, SubmissionError
from app.services.pesapal_client import PesapalClient, parse_expiry

BASE_URL = "https://cybqa.pesapal.com/pesapalv3"


def make_client(handler) -> PesapalClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PesapalClient(BASE_URL, "key", "secret", http_client=http_client)


class TestParseExpiry:
    def test_seven_fraction_digits_and_z(self):
        parsed = parse_expiry("2021-08-26T12:29:50.5177549Z")
        assert parsed == datetime(2021, 8, 26, 12, 29, 50, 517754, tzinfo=UTC)

    def test_naive_is_utc(self):
        assert parse_expiry("2026-01-01T00:00:00").tzinfo is not None

    @pytest.mark.parametrize("value", [None, "", "yesterday", 42])
    def test_unparseable(self, value):
        assert parse_expiry(value) is None


class TestRequestToken:
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "token": "tok-abc",
                    "expiryDate": "2026-01-15T13:00:00.1234567Z",
                    "error": None,
                    "status": "200",
                    "message": "Request processed successfully",
                },
            )

        token = await make_client(handler).request_token()

        assert token.token == "tok-abc"
        assert token.expires_at == datetime(2026, 1, 15, 13, 0, 0, 123456, tzinfo=UTC)
        assert seen["url"] == f"{BASE_URL}/api/Auth/RequestToken"
        assert seen["body"] == {"consumer_key": "key", "consumer_secret": "secret"}

    async def test_error_body_with_http_200(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "token": None,
                    "error": {"error_type": "api_error", "code": "invalid_consumer_key_or_secret_provided", "message": ""},
                    "status": "500",
                },
            )

        with pytest.raises(AuthError) as exc_info:
            await make_client(handler).request_token()
        assert "invalid_consumer_key" in exc_info.value.message

    async def test_missing_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "200"})

        with pytest.raises(AuthError):
            await make_client(handler).request_token()

    async def test_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AuthError):
            await make_client(handler).request_token()


class TestSubmitOrderRequest:
    async def test_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer tok-1"
            assert request.url.path.endswith("/api/Transactions/SubmitOrderRequest")
            return httpx.Response(
                200,
                json={
                    "order_tracking_id": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
                    "merchant_reference": "ZEDQUIZ-1",
                    "redirect_url": "https://cybqa.pesapal.com/pesapaliframe/PesapalIframe3/Index/?OrderTrackingId=b945",
                    "error": None,
                    "status": "200",
                },
            )

        result = await make_client(handler).submit_order_request("tok-1", {"id": "ZEDQUIZ-1"})
        assert result.tracking_id == "b945e4af-80a5-4ec1-8706-e03f8332fb04"
        assert result.merchant_reference == "ZEDQUIZ-1"
        assert result.redirect_url.startswith("https://")

    async def test_rejected_order(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"error": {"code": "duplicate_order_reference", "message": "Duplicate"}, "status": "500"},
            )

        with pytest.raises(SubmissionError) as exc_info:
            await make_client(handler).submit_order_request("tok-1", {"id": "ZEDQUIZ-1"})
        assert exc_info.value.order_id == "ZEDQUIZ-1"

    async def test_unauthorized_is_auth_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "token expired"}})

        with pytest.raises(AuthError):
            await make_client(handler).submit_order_request("tok-1", {"id": "ZEDQUIZ-1"})

    async def test_missing_redirect(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"order_tracking_id": "t1", "status": "200"})

        with pytest.raises(SubmissionError):
            await make_client(handler).submit_order_request("tok-1", {"id": "ZEDQUIZ-1"})

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SubmissionError):
            await make_client(handler).submit_order_request("tok-1", {"id": "ZEDQUIZ-1"})


class TestRegisterIPN:
    async def test_returns_ipn_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body == {"url": "https://api.test/ipn", "ipn_notification_type": "GET"}
            return httpx.Response(200, json={"ipn_id": "ipn-42", "status": "200"})

        assert await make_client(handler).register_ipn("tok-1", "https://api.test/ipn") == "ipn-42"

    async def test_missing_ipn_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "200"})

        with pytest.raises(SubmissionError):
            await make_client(handler).register_ipn("tok-1", "https://api.test/ipn")


class TestGetTransactionStatus:
    async def test_completed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["orderTrackingId"] == "track-1"
            return httpx.Response(
                200,
                json={
                    "payment_method": "MpesaZM",
                    "amount": 9.99,
                    "created_date": "2026-01-15T12:00:00.000",
                    "confirmation_code": "CONF1",
                    "payment_status_description": "Completed",
                    "description": None,
                    "message": "Request processed successfully",
                    "payment_account": "0971234567",
                    "status_code": 1,
                    "merchant_reference": "ZEDQUIZ-1",
                    "currency": "ZMW",
                    "error": {"error_type": None, "code": None, "message": None},
                    "status": "200",
                },
            )

        status = await make_client(handler).get_transaction_status("tok-1", "track-1")
        assert status.payment_status_description == "Completed"
        assert status.status_code == 1
        assert status.amount == Decimal("9.99")
        assert status.confirmation_code == "CONF1"
        assert status.merchant_reference == "ZEDQUIZ-1"

    async def test_unknown_tracking_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "error": {"error_type": "api_error", "code": "invalid_order_tracking_id", "message": ""},
                    "status": "500",
                },
            )

        with pytest.raises(StatusCheckError) as exc_info:
            await make_client(handler).get_transaction_status("tok-1", "garbled")
        assert exc_info.value.tracking_id == "garbled"

    async def test_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="Service Unavailable")

        with pytest.raises(StatusCheckError):
            await make_client(handler).get_transaction_status("tok-1", "track-1")

    async def test_unauthorized_is_auth_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        with pytest.raises(AuthError):
            await make_client(handler).get_transaction_status("tok-1", "track-1")

"""
PesaPal API v3 Client.

Thin wrapper over the four PesaPal endpoints used by the payment flow:
token request, IPN registration, order submission and transaction status.
PesaPal reports failures either as HTTP errors or as an HTTP 200 whose body
carries a non-"200" `status` or a populated `error` object, so both are
checked on every call.
"""

import re
import time
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from structlog import get_logger

from app.exceptions import AuthError, StatusCheckError, SubmissionError
from app.models.domain import AuthToken, SubmissionResult, TransactionStatus
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation

logger = get_logger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class ProviderResponseError(Exception):
    """Raised internally when PesaPal answers with an error body or status."""

    def __init__(self, http_status: int, message: str) -> None:
        self.http_status = http_status
        self.message = message
        super().__init__(f"PesaPal error (HTTP {http_status}): {message}")


def parse_expiry(value: Any) -> datetime | None:
    """
    Parse PesaPal's `expiryDate`.

    PesaPal sends ISO-8601 with up to seven fractional digits and a trailing Z,
    e.g. "2021-08-26T12:29:50.5177549Z". Naive values are taken as UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _error_message(body: dict[str, Any]) -> str | None:
    """Extract an error message from a PesaPal body, or None if it reports success."""
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("code") or error.get("error_type")
        if message:
            return str(message)
    elif error:
        return str(error)

    status = body.get("status")
    if status is not None and str(status) != "200":
        return str(body.get("message") or f"status {status}")
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PesapalClient:
    """
    PesaPal API v3 client.

    Owns an httpx.AsyncClient; pass one in for testing or connection sharing.
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize PesaPal client.

        Args:
            base_url: Sandbox or production API base (no trailing slash)
            consumer_key: PesaPal consumer key
            consumer_secret: PesaPal consumer secret
            http_client: Optional shared HTTP client
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

    async def aclose(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Make a request and return the decoded body.

        Raises:
            httpx.HTTPError: Network failure
            ProviderResponseError: PesaPal reported an error
        """
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        start = time.perf_counter()
        outcome = "error"
        try:
            with trace_operation(f"pesapal.{operation}", method=method, path=path):
                response = await self._http.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=headers,
                    json=json,
                    params=params,
                )

            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}

            if response.status_code >= 400:
                message = _error_message(body) or response.reason_phrase or "request failed"
                raise ProviderResponseError(response.status_code, message)

            message = _error_message(body)
            if message:
                raise ProviderResponseError(response.status_code, message)

            outcome = "success"
            return body
        finally:
            metrics.record_provider_call(operation, outcome, time.perf_counter() - start)

    async def request_token(self) -> AuthToken:
        """
        Request a bearer token with the consumer credentials.

        Raises:
            AuthError: Credentials rejected, malformed response or network failure
        """
        try:
            body = await self._request(
                "request_token",
                "POST",
                "/api/Auth/RequestToken",
                json={
                    "consumer_key": self.consumer_key,
                    "consumer_secret": self.consumer_secret,
                },
            )
        except ProviderResponseError as exc:
            logger.error("pesapal_token_rejected", http_status=exc.http_status, error=exc.message)
            raise AuthError(exc.message) from exc
        except httpx.HTTPError as exc:
            logger.error("pesapal_token_request_failed", error=str(exc), error_type=type(exc).__name__)
            raise AuthError(f"network error: {exc}") from exc

        token = body.get("token")
        if not token:
            logger.error("pesapal_token_missing")
            raise AuthError("response did not include a token")

        expires_at = parse_expiry(body.get("expiryDate"))
        if expires_at is None:
            expires_at = datetime.now(UTC) + DEFAULT_TOKEN_LIFETIME

        logger.info("pesapal_token_issued", expires_at=expires_at.isoformat())
        return AuthToken(token=str(token), expires_at=expires_at)

    async def register_ipn(self, token: str, url: str) -> str:
        """
        Register our IPN endpoint and return its notification id.

        Raises:
            AuthError: Token rejected
            SubmissionError: Registration failed
        """
        try:
            body = await self._request(
                "register_ipn",
                "POST",
                "/api/URLSetup/RegisterIPN",
                token=token,
                json={"url": url, "ipn_notification_type": "GET"},
            )
        except ProviderResponseError as exc:
            logger.error("pesapal_ipn_registration_rejected", http_status=exc.http_status, error=exc.message)
            if exc.http_status == 401:
                raise AuthError(exc.message) from exc
            raise SubmissionError(f"IPN registration failed: {exc.message}") from exc
        except httpx.HTTPError as exc:
            logger.error("pesapal_ipn_registration_failed", error=str(exc))
            raise SubmissionError(f"IPN registration network error: {exc}") from exc

        ipn_id = body.get("ipn_id")
        if not ipn_id:
            raise SubmissionError("IPN registration did not return an ipn_id")

        logger.info("pesapal_ipn_registered", ipn_id=ipn_id, url=url)
        return str(ipn_id)

    async def submit_order_request(self, token: str, order: dict[str, Any]) -> SubmissionResult:
        """
        Submit an order and return the hosted checkout redirect.

        Raises:
            AuthError: Token rejected
            SubmissionError: Order rejected or network failure
        """
        order_id = str(order.get("id", ""))
        try:
            body = await self._request(
                "submit_order",
                "POST",
                "/api/Transactions/SubmitOrderRequest",
                token=token,
                json=order,
            )
        except ProviderResponseError as exc:
            logger.error(
                "pesapal_order_rejected",
                order_id=order_id,
                http_status=exc.http_status,
                error=exc.message,
            )
            if exc.http_status == 401:
                raise AuthError(exc.message) from exc
            raise SubmissionError(exc.message, order_id=order_id) from exc
        except httpx.HTTPError as exc:
            logger.error("pesapal_order_request_failed", order_id=order_id, error=str(exc))
            raise SubmissionError(f"network error: {exc}", order_id=order_id) from exc

        redirect_url = body.get("redirect_url")
        tracking_id = body.get("order_tracking_id")
        if not redirect_url or not tracking_id:
            raise SubmissionError("response missing redirect_url or order_tracking_id", order_id=order_id)

        return SubmissionResult(
            redirect_url=str(redirect_url),
            tracking_id=str(tracking_id),
            merchant_reference=str(body.get("merchant_reference") or order_id),
        )

    async def get_transaction_status(self, token: str, tracking_id: str) -> TransactionStatus:
        """
        Query the authoritative status of a transaction.

        Raises:
            AuthError: Token rejected
            StatusCheckError: Provider error or network failure
        """
        try:
            body = await self._request(
                "transaction_status",
                "GET",
                "/api/Transactions/GetTransactionStatus",
                token=token,
                params={"orderTrackingId": tracking_id},
            )
        except ProviderResponseError as exc:
            logger.warning(
                "pesapal_status_rejected",
                tracking_id=tracking_id,
                http_status=exc.http_status,
                error=exc.message,
            )
            if exc.http_status == 401:
                raise AuthError(exc.message) from exc
            raise StatusCheckError(tracking_id, exc.message) from exc
        except httpx.HTTPError as exc:
            logger.warning("pesapal_status_request_failed", tracking_id=tracking_id, error=str(exc))
            raise StatusCheckError(tracking_id, f"network error: {exc}") from exc

        return TransactionStatus(
            tracking_id=tracking_id,
            payment_status_description=str(body.get("payment_status_description") or ""),
            status_code=_to_int(body.get("status_code")),
            amount=_to_decimal(body.get("amount")),
            currency=body.get("currency"),
            payment_method=body.get("payment_method"),
            payment_account=body.get("payment_account"),
            confirmation_code=body.get("confirmation_code"),
            merchant_reference=body.get("merchant_reference"),
        )

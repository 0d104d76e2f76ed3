"""
Order Submission Client - sends built orders to PesaPal.

Failures come back as SubmissionFailure values rather than exceptions so
the caller can offer a retry. A retry must build a fresh order; a failed
payload is never resubmitted.
"""

import asyncio

from structlog import get_logger

from app.exceptions import AuthError, SubmissionError
from app.models.domain import OrderPayload, SubmissionFailure, SubmissionResult
from app.services.pesapal_client import PesapalClient
from app.services.token_cache import PesapalTokenCache

logger = get_logger(__name__)


class OrderSubmissionClient:
    """Submits orders, registering the IPN endpoint first if needed."""

    def __init__(
        self,
        client: PesapalClient,
        token_cache: PesapalTokenCache,
        ipn_url: str,
        ipn_id: str | None = None,
    ) -> None:
        """
        Initialize submission client.

        Args:
            client: PesaPal API client
            token_cache: Shared token cache
            ipn_url: Public URL of our IPN endpoint
            ipn_id: Already registered notification id, if any
        """
        self.client = client
        self.token_cache = token_cache
        self.ipn_url = ipn_url
        self._ipn_id = ipn_id or None
        self._ipn_lock = asyncio.Lock()

    @property
    def ipn_id(self) -> str | None:
        return self._ipn_id

    async def ensure_ipn_registered(self) -> str:
        """
        Return the IPN notification id, registering it once if unknown.

        Raises:
            AuthError: Token unavailable
            SubmissionError: Registration failed
        """
        if self._ipn_id:
            return self._ipn_id

        async with self._ipn_lock:
            if self._ipn_id:
                return self._ipn_id
            token = await self.token_cache.get_valid_token()
            self._ipn_id = await self.client.register_ipn(token, self.ipn_url)
            return self._ipn_id

    async def submit_order(self, payload: OrderPayload) -> SubmissionResult | SubmissionFailure:
        """
        Submit an order to PesaPal.

        Returns:
            SubmissionResult with redirect URL and tracking id, or
            SubmissionFailure describing why the order was not accepted
        """
        try:
            notification_id = await self.ensure_ipn_registered()
            token = await self.token_cache.get_valid_token()
            result = await self.client.submit_order_request(
                token, payload.to_request(notification_id)
            )
        except AuthError as exc:
            self.token_cache.invalidate()
            logger.error("pesapal_submission_auth_failed", order_id=payload.order_id, error=str(exc))
            return SubmissionFailure(message=exc.user_message)
        except SubmissionError as exc:
            logger.error("pesapal_submission_failed", order_id=payload.order_id, error=exc.message)
            return SubmissionFailure(message=exc.message)

        logger.info(
            "pesapal_order_submitted",
            order_id=payload.order_id,
            tracking_id=result.tracking_id,
            merchant_reference=result.merchant_reference,
        )
        return result

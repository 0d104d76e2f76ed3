"""
Payment Service - starts a PesaPal checkout for a subscription purchase.

Flow:
1. Check PesaPal is configured
2. Reserve the plan and price it
3. Build the order (fresh order id every call)
4. Record it in the ledger as pending
5. Submit it to PesaPal
6. Attach the tracking id and hand back the redirect URL
"""

from structlog import get_logger

from app.config import Settings
from app.exceptions import SubmissionError
from app.models.api import BillingCycle
from app.models.domain import BillingSnapshot, InitiatedPayment, SubmissionFailure
from app.services.config_validator import require_pesapal_config
from app.services.ledger import PaymentLedger
from app.services.order_builder import build_order
from app.services.order_submission import OrderSubmissionClient
from app.services.plans import reserve

logger = get_logger(__name__)


class PaymentService:
    """Orchestrates payment initiation."""

    def __init__(
        self,
        ledger: PaymentLedger,
        submission: OrderSubmissionClient,
        settings: Settings,
    ) -> None:
        self.ledger = ledger
        self.submission = submission
        self.settings = settings

    async def initiate_payment(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        billing: BillingSnapshot,
    ) -> InitiatedPayment:
        """
        Start a payment and return where to send the user.

        A failed submission leaves the order pending without a tracking id.
        Calling this again builds a brand new order.

        Raises:
            ConfigError: PesaPal credentials missing
            PlanNotFoundError: Unknown plan
            ValidationError: Billing details invalid or plan not purchasable
            SubmissionError: PesaPal did not accept the order (retryable)
        """
        require_pesapal_config(self.settings)

        reservation = reserve(user_id, plan_id, billing_cycle)
        payload, snapshot = build_order(reservation, billing, self.settings)

        await self.ledger.create(payload, reservation, snapshot)

        result = await self.submission.submit_order(payload)
        if isinstance(result, SubmissionFailure):
            logger.warning(
                "payment_initiation_failed",
                order_id=payload.order_id,
                user_id=user_id,
                error=result.message,
            )
            raise SubmissionError(result.message, order_id=payload.order_id)

        await self.ledger.attach_tracking_id(
            payload.order_id, result.tracking_id, result.merchant_reference
        )

        logger.info(
            "payment_initiated",
            order_id=payload.order_id,
            user_id=user_id,
            plan_id=reservation.plan.plan_id,
            tracking_id=result.tracking_id,
        )
        return InitiatedPayment(
            order_id=payload.order_id,
            redirect_url=result.redirect_url,
            tracking_id=result.tracking_id,
            merchant_reference=result.merchant_reference,
            amount=payload.amount,
            currency=payload.currency,
        )

"""
API Routes - FastAPI endpoints for ZedQuiz subscription payments.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import asyncio
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_activator,
    get_ledger,
    get_payment_service,
    get_reconciler,
)
from app.config import Settings, get_settings
from app.db.session import get_db
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
)
from app.models.api import (
    ConfigStatusResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthResponse,
    IPNAcknowledgement,
    PaymentHistoryResponse,
    PaymentOrderResponse,
    PaymentOutcome,
    PaymentStatusResponse,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
)
from app.models.domain import BillingSnapshot, PaymentOrderData, ReconcileResult
from app.observability.metrics import metrics
from app.services.config_validator import validate_pesapal_config
from app.services.entitlement import EntitlementActivator
from app.services.ledger import PaymentLedger
from app.services.payments import PaymentService
from app.services.plans import list_plans, yearly_savings
from app.services.reconciler import CancellationToken, PaymentReconciler

logger = get_logger(__name__)

router = APIRouter()

OUTCOME_MESSAGES: dict[PaymentOutcome, str] = {
    PaymentOutcome.CHECKING: "Your payment is still being processed.",
    PaymentOutcome.CONFIRMED: "Payment confirmed. Your subscription is now active.",
    PaymentOutcome.FAILED: "Your payment failed. Please try again.",
    PaymentOutcome.CANCELLED: "Your payment was cancelled.",
    PaymentOutcome.INVALID: "Your payment could not be verified. Please contact support.",
    PaymentOutcome.EXPIRED: (
        "We are still waiting for PesaPal to confirm your payment. "
        "Your subscription will update automatically once it does."
    ),
}

DISCONNECT_CHECK_INTERVAL_SECONDS = 0.5


def _order_response(order: PaymentOrderData) -> PaymentOrderResponse:
    return PaymentOrderResponse(
        order_id=order.order_id,
        user_id=order.user_id,
        plan_id=order.plan_id,
        billing_cycle=order.billing_cycle,
        amount=order.amount,
        currency=order.currency,
        status=order.status,
        tracking_id=order.tracking_id,
        merchant_reference=order.merchant_reference,
        payment_method=order.payment_method,
        confirmation_code=order.confirmation_code,
        created_at=order.created_at,
        finalized_at=order.finalized_at,
    )


def _status_response(result: ReconcileResult) -> PaymentStatusResponse:
    message = OUTCOME_MESSAGES[result.outcome]
    if result.cancelled:
        message = "Status check stopped. Your payment will still be processed."
    return PaymentStatusResponse(
        tracking_id=result.tracking_id,
        outcome=result.outcome,
        order_id=result.order.order_id if result.order else None,
        order_status=result.order.status if result.order else None,
        attempts=result.attempts,
        cancelled=result.cancelled,
        message=message,
    )


def _reconcile_http_error(exc: PaymentError) -> HTTPException:
    """Map reconciliation failures to HTTP errors. Internal detail is never exposed."""
    if isinstance(exc, StatusCheckError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.user_message)
    if isinstance(exc, OrderNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.user_message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=GENERIC_SUPPORT_MESSAGE,
    )


# =============================================================================
# Configuration / Catalog
# =============================================================================


@router.get("/v1/payments/config", response_model=ConfigStatusResponse)
async def get_payment_config(settings: Settings = Depends(get_settings)) -> ConfigStatusResponse:
    """
    Report whether PesaPal is configured.

    Clients call this before offering a payment button.
    """
    result = validate_pesapal_config(settings)
    return ConfigStatusResponse(
        is_valid=result.is_valid,
        missing=result.missing,
        message=None if result.is_valid else ConfigError.user_message,
    )


@router.get("/v1/payments/plans", response_model=PlanListResponse)
async def get_plans(settings: Settings = Depends(get_settings)) -> PlanListResponse:
    """Subscription plans with monthly and yearly prices."""
    return PlanListResponse(
        plans=[
            PlanResponse(
                plan_id=plan.plan_id,
                name=plan.name,
                tier=plan.tier,
                currency=settings.payment_currency,
                price_monthly=plan.price_monthly,
                price_yearly=plan.price_yearly,
                yearly_savings=yearly_savings(plan),
            )
            for plan in list_plans()
        ]
    )


# =============================================================================
# Orders
# =============================================================================


@router.post(
    "/v1/payments/orders",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    request: CreatePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
) -> CreatePaymentResponse:
    """
    Start a PesaPal checkout.

    Returns the hosted checkout URL the client should redirect to. A 502
    means PesaPal did not accept the order; retrying creates a new order.
    """
    billing = BillingSnapshot(
        first_name=request.billing.first_name,
        last_name=request.billing.last_name,
        email=request.billing.email,
        phone=request.billing.phone,
        address=request.billing.address,
        city=request.billing.city,
        state=request.billing.state,
        postal_code=request.billing.postal_code,
    )

    try:
        initiated = await service.initiate_payment(
            user_id=request.user_id,
            plan_id=request.plan_id,
            billing_cycle=request.billing_cycle,
            billing=billing,
        )

    except (ConfigError, AuthError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.user_message,
        ) from exc

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": exc.user_message, "fields": exc.violations},
        ) from exc

    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.user_message,
        ) from exc

    except SubmissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": exc.user_message,
                "order_id": exc.order_id,
                "retryable": exc.retryable,
            },
        ) from exc

    except (ConflictError, StateError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=GENERIC_SUPPORT_MESSAGE,
        ) from exc

    return CreatePaymentResponse(
        order_id=initiated.order_id,
        redirect_url=initiated.redirect_url,
        tracking_id=initiated.tracking_id,
        merchant_reference=initiated.merchant_reference,
        amount=initiated.amount,
        currency=initiated.currency,
    )


@router.get("/v1/payments/orders/{order_id}", response_model=PaymentOrderResponse)
async def get_order(
    order_id: str,
    ledger: PaymentLedger = Depends(get_ledger),
) -> PaymentOrderResponse:
    """Get a payment order from the local ledger."""
    try:
        order = await ledger.get(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.user_message,
        ) from exc
    return _order_response(order)


@router.get("/v1/payments/users/{user_id}/orders", response_model=PaymentHistoryResponse)
async def get_payment_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    ledger: PaymentLedger = Depends(get_ledger),
) -> PaymentHistoryResponse:
    """Payment history of a user, newest first."""
    orders = await ledger.list_for_user(user_id, limit=limit)
    return PaymentHistoryResponse(orders=[_order_response(order) for order in orders])


@router.get("/v1/payments/users/{user_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user_id: str,
    activator: EntitlementActivator = Depends(get_activator),
) -> SubscriptionResponse:
    """Current subscription entitlement of a user."""
    entitlement = await activator.get_entitlement(user_id)
    return SubscriptionResponse(
        user_id=entitlement.user_id,
        tier=entitlement.tier,
        status=entitlement.status,
        billing_cycle=entitlement.billing_cycle,
        end_date=entitlement.end_date,
    )


# =============================================================================
# Status / Reconciliation
# =============================================================================


@router.get("/v1/payments/status/{tracking_id}", response_model=PaymentStatusResponse)
async def check_payment_status(
    tracking_id: str,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PaymentStatusResponse:
    """Run a single status check against PesaPal and apply the result."""
    try:
        result = await reconciler.check_once(tracking_id)
    except PaymentError as exc:
        raise _reconcile_http_error(exc) from exc
    return _status_response(result)


@router.get("/v1/payments/status/{tracking_id}/wait", response_model=PaymentStatusResponse)
async def wait_for_payment(
    tracking_id: str,
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PaymentStatusResponse:
    """
    Poll PesaPal until the payment settles or the poll budget runs out.

    Polling stops as soon as the client disconnects.
    """
    cancel = CancellationToken()

    async def watch_disconnect() -> None:
        while not cancel.cancelled:
            if await request.is_disconnected():
                logger.info("payment_wait_client_disconnected", tracking_id=tracking_id)
                cancel.cancel()
                return
            await asyncio.sleep(DISCONNECT_CHECK_INTERVAL_SECONDS)

    watcher = asyncio.create_task(watch_disconnect())
    try:
        result = await reconciler.poll(tracking_id, cancel)
    except PaymentError as exc:
        raise _reconcile_http_error(exc) from exc
    finally:
        watcher.cancel()

    return _status_response(result)


@router.get("/v1/payments/callback", response_model=PaymentStatusResponse)
async def payment_callback(
    order_tracking_id: str | None = Query(None, alias="OrderTrackingId"),
    order_merchant_reference: str | None = Query(None, alias="OrderMerchantReference"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PaymentStatusResponse:
    """
    Browser return from the PesaPal checkout.

    Checks the payment once. If PesaPal cannot answer yet the outcome is
    `checking` and the client should keep polling the status endpoint.
    """
    if not order_tracking_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing OrderTrackingId",
        )

    logger.info(
        "pesapal_callback_received",
        tracking_id=order_tracking_id,
        merchant_reference=order_merchant_reference,
    )

    try:
        result = await reconciler.check_once(order_tracking_id)
    except StatusCheckError as exc:
        logger.warning("pesapal_callback_check_deferred", tracking_id=order_tracking_id, error=exc.message)
        result = ReconcileResult(tracking_id=order_tracking_id, outcome=PaymentOutcome.CHECKING)
    except PaymentError as exc:
        raise _reconcile_http_error(exc) from exc

    return _status_response(result)


@router.get("/v1/payments/ipn", response_model=IPNAcknowledgement)
async def pesapal_ipn(
    pesapal_merchant_reference: str | None = None,
    pesapal_transaction_tracking_id: str | None = None,
    pesapal_notification_type: str | None = None,
    order_tracking_id: str | None = Query(None, alias="OrderTrackingId"),
    order_merchant_reference: str | None = Query(None, alias="OrderMerchantReference"),
    order_notification_type: str | None = Query(None, alias="OrderNotificationType"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> IPNAcknowledgement:
    """
    PesaPal Instant Payment Notification.

    Always answers HTTP 200. The acknowledgement `status` is "200" when the
    notification was processed and "500" when PesaPal should send it again.
    """
    tracking_id = order_tracking_id or pesapal_transaction_tracking_id
    merchant_reference = order_merchant_reference or pesapal_merchant_reference
    notification_type = order_notification_type or pesapal_notification_type or "IPNCHANGE"

    ack = IPNAcknowledgement(
        orderNotificationType=notification_type,
        orderTrackingId=tracking_id,
        orderMerchantReference=merchant_reference,
    )

    logger.info(
        "pesapal_ipn_received",
        tracking_id=tracking_id,
        merchant_reference=merchant_reference,
        notification_type=notification_type,
    )

    if not tracking_id:
        metrics.ipn_notifications_total.labels(
            notification_type=notification_type, outcome="missing_tracking_id"
        ).inc()
        return ack.model_copy(update={"status": "500", "message": "Missing tracking id"})

    try:
        result = await reconciler.check_once(tracking_id)
    except ReconciliationDivergence:
        # Payment is recorded as confirmed; the reconcile job retries activation
        metrics.ipn_notifications_total.labels(
            notification_type=notification_type, outcome="divergence"
        ).inc()
        return ack
    except PaymentError as exc:
        metrics.ipn_notifications_total.labels(
            notification_type=notification_type, outcome="error"
        ).inc()
        logger.error(
            "pesapal_ipn_processing_failed",
            tracking_id=tracking_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ack.model_copy(update={"status": "500", "message": "IPN processing failed"})
    except Exception as exc:
        metrics.ipn_notifications_total.labels(
            notification_type=notification_type, outcome="error"
        ).inc()
        logger.exception(
            "pesapal_ipn_processing_failed",
            tracking_id=tracking_id,
            error_type=type(exc).__name__,
        )
        return ack.model_copy(update={"status": "500", "message": "IPN processing failed"})

    metrics.ipn_notifications_total.labels(
        notification_type=notification_type, outcome=result.outcome.value
    ).inc()
    return ack


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

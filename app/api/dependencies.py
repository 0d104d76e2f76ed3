"""
FastAPI Dependencies - PesaPal singletons and per-request services.

The PesaPal client, token cache and submission client live for the whole
process so every request shares one bearer token and one IPN registration.
Ledger, activator, reconciler and payment service are bound to the
request's database session.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.session import get_db
from app.services.entitlement import EntitlementActivator
from app.services.ledger import PaymentLedger
from app.services.order_submission import OrderSubmissionClient
from app.services.payments import PaymentService
from app.services.pesapal_client import PesapalClient
from app.services.reconciler import PaymentReconciler, PollPolicy
from app.services.token_cache import PesapalTokenCache

logger = get_logger(__name__)

# Process-wide PesaPal state
_pesapal_client: PesapalClient | None = None
_token_cache: PesapalTokenCache | None = None
_order_submission: OrderSubmissionClient | None = None


def get_pesapal_client() -> PesapalClient:
    """Get or create the shared PesaPal client."""
    global _pesapal_client
    if _pesapal_client is None:
        settings = get_settings()
        _pesapal_client = PesapalClient(
            base_url=settings.pesapal_api_base,
            consumer_key=settings.pesapal_consumer_key,
            consumer_secret=settings.pesapal_consumer_secret,
            timeout=settings.pesapal_http_timeout_seconds,
        )
        logger.info("pesapal_client_created", base_url=settings.pesapal_api_base)
    return _pesapal_client


def get_token_cache() -> PesapalTokenCache:
    """Get or create the shared token cache."""
    global _token_cache
    if _token_cache is None:
        _token_cache = PesapalTokenCache(get_pesapal_client())
    return _token_cache


def get_order_submission() -> OrderSubmissionClient:
    """Get or create the shared submission client (caches the IPN id)."""
    global _order_submission
    if _order_submission is None:
        settings = get_settings()
        _order_submission = OrderSubmissionClient(
            client=get_pesapal_client(),
            token_cache=get_token_cache(),
            ipn_url=settings.pesapal_ipn_url,
            ipn_id=settings.pesapal_ipn_id or None,
        )
    return _order_submission


async def close_pesapal() -> None:
    """Release the shared PesaPal client (for graceful shutdown)."""
    global _pesapal_client, _token_cache, _order_submission
    if _pesapal_client is not None:
        await _pesapal_client.aclose()
    _pesapal_client = None
    _token_cache = None
    _order_submission = None


def get_ledger(db: AsyncSession = Depends(get_db)) -> PaymentLedger:
    return PaymentLedger(db)


def get_activator(db: AsyncSession = Depends(get_db)) -> EntitlementActivator:
    return EntitlementActivator(db)


def get_reconciler(
    ledger: PaymentLedger = Depends(get_ledger),
    activator: EntitlementActivator = Depends(get_activator),
    token_cache: PesapalTokenCache = Depends(get_token_cache),
    client: PesapalClient = Depends(get_pesapal_client),
    settings: Settings = Depends(get_settings),
) -> PaymentReconciler:
    return PaymentReconciler(
        ledger=ledger,
        token_cache=token_cache,
        client=client,
        activator=activator,
        policy=PollPolicy.from_settings(settings),
    )


def get_payment_service(
    ledger: PaymentLedger = Depends(get_ledger),
    submission: OrderSubmissionClient = Depends(get_order_submission),
    settings: Settings = Depends(get_settings),
) -> PaymentService:
    return PaymentService(ledger=ledger, submission=submission, settings=settings)

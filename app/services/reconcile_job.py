"""
Reconciliation job - repairs payments the request path could not finish.

Two passes:
- Divergent activations: confirmed orders whose entitlement grant failed.
- Stale pending orders: polls that expired or IPNs that never arrived.
"""

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.exceptions import PaymentError, StatusCheckError
from app.services.entitlement import EntitlementActivator
from app.services.ledger import PaymentLedger
from app.services.reconciler import PaymentReconciler

logger = get_logger(__name__)


@dataclass
class JobStats:
    """Counts from one job pass."""

    examined: int = 0
    repaired: int = 0
    still_pending: int = 0
    failed: int = 0
    order_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "examined": self.examined,
            "repaired": self.repaired,
            "still_pending": self.still_pending,
            "failed": self.failed,
        }


async def retry_divergent_activations(
    session: AsyncSession,
    limit: int = 100,
    dry_run: bool = False,
) -> JobStats:
    """Retry entitlement activation for confirmed orders carrying a divergence marker."""
    ledger = PaymentLedger(session)
    activator = EntitlementActivator(session)
    stats = JobStats()

    for order in await ledger.list_divergent(limit=limit):
        stats.examined += 1
        stats.order_ids.append(order.order_id)
        if dry_run:
            logger.info("divergent_order_found", order_id=order.order_id, reason=order.divergence_reason)
            continue

        try:
            await activator.activate(order)
        except (PaymentError, SQLAlchemyError) as exc:
            stats.failed += 1
            await ledger.mark_divergence(order.order_id, f"{type(exc).__name__}: {exc}")
            logger.error(
                "divergent_activation_retry_failed",
                order_id=order.order_id,
                user_id=order.user_id,
                error=str(exc),
            )
            continue

        await ledger.clear_divergence(order.order_id)
        stats.repaired += 1

    logger.info("divergent_activation_pass_complete", dry_run=dry_run, **stats.as_dict())
    return stats


async def settle_stale_pending(
    reconciler: PaymentReconciler,
    ledger: PaymentLedger,
    older_than: datetime,
    limit: int = 100,
    dry_run: bool = False,
) -> JobStats:
    """Re-check pending orders that have a tracking id and were created before `older_than`."""
    stats = JobStats()

    for order in await ledger.list_stale_pending(older_than, limit=limit):
        stats.examined += 1
        stats.order_ids.append(order.order_id)
        if dry_run or order.tracking_id is None:
            logger.info("stale_pending_order_found", order_id=order.order_id, tracking_id=order.tracking_id)
            continue

        try:
            result = await reconciler.check_once(order.tracking_id)
        except StatusCheckError as exc:
            stats.still_pending += 1
            logger.warning("stale_pending_check_failed", order_id=order.order_id, error=exc.message)
            continue
        except PaymentError as exc:
            stats.failed += 1
            logger.error("stale_pending_settle_failed", order_id=order.order_id, error=str(exc))
            continue
        except SQLAlchemyError as exc:
            stats.failed += 1
            await ledger.session.rollback()
            logger.error(
                "stale_pending_settle_failed",
                order_id=order.order_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            continue

        if result.outcome.is_terminal:
            stats.repaired += 1
        else:
            stats.still_pending += 1

    logger.info("stale_pending_pass_complete", dry_run=dry_run, **stats.as_dict())
    return stats

"""
Tests for the reconciliation job.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import OperationalError

from app.exceptions import StatusCheckError
from app.models.api import OrderStatus, PaymentOutcome
from app.models.domain import PaymentOrderData, ReconcileResult
from app.services.ledger import PaymentLedger
from app.services.reconcile_job import (
    JobStats,
    retry_divergent_activations,
    settle_stale_pending,
)
from app.services.reconciler import PaymentReconciler


def divergent(factory: Callable[..., PaymentOrderData], order_id: str) -> PaymentOrderData:
    return factory(order_id=order_id, status=OrderStatus.CONFIRMED, divergence_reason="db down")


class TestRetryDivergentActivations:
    """Tests for retry_divergent_activations."""

    async def test_repairs_and_clears_marker(
        self,
        db_session: AsyncMock,
        order_data_factory: Callable[..., PaymentOrderData],
    ):
        orders = [divergent(order_data_factory, "A"), divergent(order_data_factory, "B")]
        with (
            patch("app.services.reconcile_job.PaymentLedger") as ledger_cls,
            patch("app.services.reconcile_job.EntitlementActivator") as activator_cls,
        ):
            ledger = ledger_cls.return_value
            ledger.list_divergent = AsyncMock(return_value=orders)
            ledger.clear_divergence = AsyncMock()
            activator_cls.return_value.activate = AsyncMock()

            stats = await retry_divergent_activations(db_session)

        assert stats.examined == 2
        assert stats.repaired == 2
        assert ledger.clear_divergence.await_count == 2

    async def test_failure_keeps_marker(
        self,
        db_session: AsyncMock,
        order_data_factory: Callable[..., PaymentOrderData],
    ):
        with (
            patch("app.services.reconcile_job.PaymentLedger") as ledger_cls,
            patch("app.services.reconcile_job.EntitlementActivator") as activator_cls,
        ):
            ledger = ledger_cls.return_value
            ledger.list_divergent = AsyncMock(return_value=[divergent(order_data_factory, "A")])
            ledger.mark_divergence = AsyncMock()
            ledger.clear_divergence = AsyncMock()
            activator_cls.return_value.activate = AsyncMock(
                side_effect=OperationalError("UPDATE", {}, Exception("still down"))
            )

            stats = await retry_divergent_activations(db_session)

        assert stats.failed == 1
        assert stats.repaired == 0
        ledger.mark_divergence.assert_awaited_once()
        ledger.clear_divergence.assert_not_called()

    async def test_dry_run_changes_nothing(
        self,
        db_session: AsyncMock,
        order_data_factory: Callable[..., PaymentOrderData],
    ):
        with (
            patch("app.services.reconcile_job.PaymentLedger") as ledger_cls,
            patch("app.services.reconcile_job.EntitlementActivator") as activator_cls,
        ):
            ledger_cls.return_value.list_divergent = AsyncMock(
                return_value=[divergent(order_data_factory, "A")]
            )
            activator_cls.return_value.activate = AsyncMock()

            stats = await retry_divergent_activations(db_session, dry_run=True)

        assert stats.examined == 1
        assert stats.order_ids == ["A"]
        activator_cls.return_value.activate.assert_not_called()


class TestSettleStalePending:
    """Tests for settle_stale_pending."""

    async def test_counts_outcomes(self, order_data_factory: Callable[..., PaymentOrderData]):
        orders = [
            order_data_factory(order_id="A", tracking_id="t-a"),
            order_data_factory(order_id="B", tracking_id="t-b"),
            order_data_factory(order_id="C", tracking_id="t-c"),
        ]
        ledger = MagicMock(spec=PaymentLedger)
        ledger.list_stale_pending = AsyncMock(return_value=orders)
        reconciler = MagicMock(spec=PaymentReconciler)
        reconciler.check_once = AsyncMock(
            side_effect=[
                ReconcileResult(tracking_id="t-a", outcome=PaymentOutcome.CONFIRMED),
                ReconcileResult(tracking_id="t-b", outcome=PaymentOutcome.CHECKING),
                StatusCheckError("t-c", "HTTP 503"),
            ]
        )

        stats = await settle_stale_pending(
            reconciler, ledger, older_than=datetime.now(UTC) - timedelta(minutes=30)
        )

        assert stats.as_dict() == {"examined": 3, "repaired": 1, "still_pending": 2, "failed": 0}

    async def test_database_failure_does_not_stop_pass(
        self, order_data_factory: Callable[..., PaymentOrderData]
    ):
        orders = [
            order_data_factory(order_id="A", tracking_id="t-a"),
            order_data_factory(order_id="B", tracking_id="t-b"),
        ]
        ledger = MagicMock(spec=PaymentLedger)
        ledger.session = MagicMock(rollback=AsyncMock())
        ledger.list_stale_pending = AsyncMock(return_value=orders)
        reconciler = MagicMock(spec=PaymentReconciler)
        reconciler.check_once = AsyncMock(
            side_effect=[
                OperationalError("SELECT", {}, Exception("db down")),
                ReconcileResult(tracking_id="t-b", outcome=PaymentOutcome.CONFIRMED),
            ]
        )

        stats = await settle_stale_pending(
            reconciler, ledger, older_than=datetime.now(UTC) - timedelta(minutes=30)
        )

        assert stats.failed == 1
        assert stats.repaired == 1
        ledger.session.rollback.assert_awaited_once()
        assert reconciler.check_once.await_count == 2

    async def test_dry_run_does_not_query_provider(
        self, order_data_factory: Callable[..., PaymentOrderData]
    ):
        ledger = MagicMock(spec=PaymentLedger)
        ledger.list_stale_pending = AsyncMock(return_value=[order_data_factory()])
        reconciler = MagicMock(spec=PaymentReconciler)
        reconciler.check_once = AsyncMock()

        stats = await settle_stale_pending(reconciler, ledger, datetime.now(UTC), dry_run=True)

        assert stats.examined == 1
        reconciler.check_once.assert_not_called()


def test_job_stats_defaults():
    assert JobStats().as_dict() == {"examined": 0, "repaired": 0, "still_pending": 0, "failed": 0}

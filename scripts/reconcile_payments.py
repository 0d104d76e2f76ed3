#!/usr/bin/env python3
"""
Payment Reconciliation Script

Repairs payments the request path could not finish:
- confirmed orders whose subscription activation failed
- pending orders whose poll expired or whose IPN never arrived

Usage:
    # Run both passes (for cron)
    python3 scripts/reconcile_payments.py

    # Only look at orders older than an hour, at most 20 of each kind
    python3 scripts/reconcile_payments.py --stale-minutes 60 --limit 20

    # List what would be repaired
    python3 scripts/reconcile_payments.py --dry-run
"""

import argparse
import asyncio
import os
import sys
from datetime import UTC, datetime, timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.api.dependencies import close_pesapal, get_pesapal_client, get_token_cache
from app.config import settings
from app.db.session import close_engines, get_session
from app.observability.logging import get_logger, setup_logging
from app.services.config_validator import validate_pesapal_config
from app.services.entitlement import EntitlementActivator
from app.services.ledger import PaymentLedger
from app.services.reconcile_job import retry_divergent_activations, settle_stale_pending
from app.services.reconciler import PaymentReconciler, PollPolicy

logger = get_logger("scripts.reconcile_payments")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile ZedQuiz PesaPal payments")
    parser.add_argument("--limit", type=int, default=100, help="Max orders per pass")
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=30,
        help="Re-check pending orders created more than this many minutes ago",
    )
    parser.add_argument("--dry-run", action="store_true", help="List orders without changing them")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    """Run both passes. Returns the process exit code."""
    exit_code = 0
    try:
        async with get_session() as session:
            divergent = await retry_divergent_activations(
                session, limit=args.limit, dry_run=args.dry_run
            )
        if divergent.failed:
            exit_code = 1

        config = validate_pesapal_config(settings)
        if not config.is_valid:
            logger.error("reconcile_skipped_stale_pending", missing=config.missing)
            return 2

        older_than = datetime.now(UTC) - timedelta(minutes=args.stale_minutes)
        async with get_session() as session:
            ledger = PaymentLedger(session)
            reconciler = PaymentReconciler(
                ledger=ledger,
                token_cache=get_token_cache(),
                client=get_pesapal_client(),
                activator=EntitlementActivator(session),
                policy=PollPolicy.from_settings(settings),
            )
            stale = await settle_stale_pending(
                reconciler, ledger, older_than, limit=args.limit, dry_run=args.dry_run
            )
        if stale.failed:
            exit_code = 1

        logger.info(
            "reconcile_run_complete",
            dry_run=args.dry_run,
            divergent=divergent.as_dict(),
            stale_pending=stale.as_dict(),
        )
    finally:
        await close_pesapal()
        await close_engines()

    return exit_code


def main() -> None:
    setup_logging()
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()

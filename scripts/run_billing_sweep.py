#!/usr/bin/env python3
"""
Billing Sweep Script

Runs the periodic billing housekeeping: subscription transitions (trial
end, period end, grace expiry), lapsed monthly credit expiry and expired
login session cleanup. Run as a cron job or manually.

Usage:
    python -m scripts.run_billing_sweep                  # Sweep as of now
    python -m scripts.run_billing_sweep --at 2026-04-01T00:00:00+00:00
"""

import argparse
import asyncio
import logging
from datetime import datetime, timezone

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.infrastructure.db.database import Database
from app.infrastructure.services.billing_sweep_service import BillingSweepService
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.session_service import SessionService
from app.infrastructure.services.subscription_service import SubscriptionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_instant(value: str) -> datetime:
    """ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def run_sweep(now: datetime = None) -> dict:
    db = Database.from_settings(settings)
    try:
        ledger = CreditLedgerService(db)
        # The sweep never talks to the gateway
        subscriptions = SubscriptionService(db, ledger, gateway=None, settings=settings)
        sessions = SessionService(db, settings)
        return await BillingSweepService(ledger, subscriptions, sessions).run(now)
    finally:
        await db.close()


async def main():
    parser = argparse.ArgumentParser(description="Run billing sweeps")
    parser.add_argument(
        "--at",
        type=parse_instant,
        default=None,
        help="Evaluate as of this ISO-8601 instant instead of now"
    )
    args = parser.parse_args()

    summary = await run_sweep(args.at)

    print("\n=== Sweep Complete ===")
    print(f"Subscriptions: {summary['subscriptions']}")
    print(f"Expired balances: {summary['expired_balances']}")
    print(f"Closed sessions: {summary['closed_sessions']}")


if __name__ == "__main__":
    asyncio.run(main())

"""
Billing Sweep Service

Time-driven housekeeping, run from cron via ``scripts/run_billing_sweep.py``
or the admin API:
- lapsed monthly credit allowances are expired
- subscriptions move on trial end, period end and grace expiry
- expired login sessions are closed
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from app.infrastructure.db.models.base import utc_now
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.session_service import SessionService
from app.infrastructure.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


class BillingSweepService:
    """Runs every periodic sweep with a single ``now``."""

    def __init__(
        self,
        ledger: CreditLedgerService,
        subscriptions: SubscriptionService,
        sessions: SessionService,
    ):
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._sessions = sessions

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        logger.info(f"Billing sweep started at {now.isoformat()}")

        # Subscriptions first so a trial that just expired has its credits
        # swept in the same pass
        subscriptions = await self._subscriptions.process_due_subscriptions(now)
        expired_balances = await self._ledger.expire_stale_balances(now)
        closed_sessions = await self._sessions.sweep_expired(now)

        summary = {
            "ran_at": now.isoformat(),
            "subscriptions": subscriptions,
            "expired_balances": expired_balances,
            "closed_sessions": closed_sessions,
        }
        logger.info(f"Billing sweep finished: {summary}")
        return summary

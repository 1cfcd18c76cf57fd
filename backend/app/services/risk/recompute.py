"""
Batch Risk Recompute

Re-scores every at-risk account (active, trialing, past_due, unpaid).
Externally triggered (cron -> internal endpoint) and throttled by a global
fixed-window limiter injected by the caller. Each account is scored in
isolation: one failure is counted and logged, the batch continues.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from ...errors import EngineError, RateLimited
from ...models.db_models import SubscriptionSnapshotDB, utcnow
from ..rate_limit import FixedWindowRateLimiter
from .risk_scorer import RiskScorer, SCORED_SUBSCRIPTION_STATUSES


logger = logging.getLogger(__name__)


RECOMPUTE_LIMIT_KEY = "global"


class RiskRecomputeJob:
    """
    Usage:
        job = RiskRecomputeJob(db, limiter)
        result = job.run()   # {"processed": n, "success": n, "errors": n}
    """

    def __init__(self, db: Session, limiter: FixedWindowRateLimiter, scorer: Optional[RiskScorer] = None):
        self.db = db
        self.limiter = limiter
        self.scorer = scorer or RiskScorer(db)

    def at_risk_account_ids(self) -> List[str]:
        rows = self.db.query(SubscriptionSnapshotDB.account_id).filter(
            SubscriptionSnapshotDB.status.in_(SCORED_SUBSCRIPTION_STATUSES)
        ).order_by(SubscriptionSnapshotDB.account_id).all()
        return [row[0] for row in rows]

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Score all at-risk accounts.

        Raises:
            RateLimited: the global window is exhausted (nothing is scored)
        """
        decision = self.limiter.hit(RECOMPUTE_LIMIT_KEY)
        if not decision.allowed:
            logger.warning(f"Risk recompute rejected by rate limiter, retry after {decision.retry_after}s")
            raise RateLimited(
                "Risk recompute is rate limited. Please try again later.",
                retry_after=decision.retry_after,
            )

        now = now or utcnow()
        account_ids = self.at_risk_account_ids()
        success = 0
        errors = 0

        for account_id in account_ids:
            try:
                self.scorer.score(account_id, now)
                success += 1
            except EngineError as e:
                errors += 1
                logger.error(f"Risk recompute failed for account {account_id}: {e.message}")

        self.db.commit()

        result = {"processed": len(account_ids), "success": success, "errors": errors}
        logger.info(f"Risk recompute complete: {result}")
        return result

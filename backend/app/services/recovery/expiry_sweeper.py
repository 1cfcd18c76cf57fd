"""
Expiry Sweeper

Materializes OPEN -> EXPIRED for every case past its deadline.

Runs via cron through the internal scheduler endpoint. Read paths already
treat a lapsed open case as expired; the sweep keeps stored status in step
so the ranking, dashboard and ledger views agree. resolved_at is set to the
deadline itself, the moment the case actually lapsed.
"""
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from ...models.db_models import RecoveryCaseDB, RecoveryCaseStatus, utcnow


logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    AUTHORITY: SYSTEM - no operator confirmation. Idempotent: a second run
    with the same clock finds nothing to do.
    """

    def __init__(self, db: Session):
        self.db = db

    def lapsed_case_ids(self, now: datetime):
        rows = self.db.query(RecoveryCaseDB.id).filter(
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
            RecoveryCaseDB.deadline_at < now,
        ).all()
        return [row[0] for row in rows]

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        candidates = self.lapsed_case_ids(now)

        expired = 0
        if candidates:
            # Guarded on status and deadline so a concurrent recovery wins cleanly
            expired = self.db.query(RecoveryCaseDB).filter(
                RecoveryCaseDB.id.in_(candidates),
                RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
                RecoveryCaseDB.deadline_at < now,
            ).update(
                {
                    RecoveryCaseDB.status: RecoveryCaseStatus.EXPIRED,
                    RecoveryCaseDB.resolved_at: RecoveryCaseDB.deadline_at,
                    RecoveryCaseDB.updated_at: now,
                },
                synchronize_session=False,
            )

        self.db.commit()

        logger.info(f"Expiry sweep: {expired} of {len(candidates)} lapsed cases expired")
        return {
            "run_date": now.isoformat(),
            "candidates": len(candidates),
            "expired": expired,
            "case_ids": candidates,
        }

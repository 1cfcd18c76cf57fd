"""
Dunning Scheduler

Sends automated recovery notices for open cases: a first notice as soon as
the case is seen, then a single follow-up once the cooldown has passed.

    messages_sent = 0                        -> notice #1
    messages_sent = 1, cooldown elapsed      -> notice #2
    messages_sent = 2                        -> nothing more

Each send is claimed with a compare-and-swap on messages_sent, so two
overlapping runs never deliver the same notice twice. Delivery goes through
the notifier and is fire-and-forget: a failed send still consumes the slot
and is recorded on the case timeline.

Runs via cron through the internal scheduler endpoint.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import os

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models.db_models import RecoveryActionType, RecoveryCaseDB, RecoveryCaseStatus, utcnow
from ..collaborators import notify_safely
from .case_manager import RecoveryCaseManager


logger = logging.getLogger(__name__)


MAX_RECOVERY_NOTICES = 2
# Case windows are 48h, so the follow-up has to land well inside one
DUNNING_FOLLOW_UP_HOURS = int(os.getenv("DUNNING_FOLLOW_UP_HOURS", "24"))


class DunningScheduler:
    """
    AUTHORITY: SYSTEM - no operator confirmation.

    Usage:
        scheduler = DunningScheduler(db, notifier=notifier)
        summary = scheduler.run()
    """

    def __init__(
        self,
        db: Session,
        notifier=None,
        follow_up_after: Optional[timedelta] = None,
        case_manager: Optional[RecoveryCaseManager] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.follow_up_after = follow_up_after or timedelta(hours=DUNNING_FOLLOW_UP_HOURS)
        self.cases = case_manager or RecoveryCaseManager(db, notifier=notifier)

    def due_cases(self, now: datetime) -> List[RecoveryCaseDB]:
        """Open, unexpired cases with a notice slot available now."""
        cooled_down = now - self.follow_up_after
        return self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
            RecoveryCaseDB.deadline_at >= now,
            RecoveryCaseDB.messages_sent < MAX_RECOVERY_NOTICES,
            or_(
                RecoveryCaseDB.messages_sent == 0,
                RecoveryCaseDB.last_message_at <= cooled_down,
            ),
        ).order_by(RecoveryCaseDB.deadline_at.asc()).all()

    def _claim(self, case: RecoveryCaseDB, now: datetime) -> Optional[int]:
        """Take the next notice slot. Returns the notice number, or None if another run got it."""
        sent = case.messages_sent or 0
        updated = self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.id == case.id,
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
            RecoveryCaseDB.messages_sent == sent,
        ).update(
            {
                RecoveryCaseDB.messages_sent: sent + 1,
                RecoveryCaseDB.last_message_at: now,
                RecoveryCaseDB.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.refresh(case)
        return sent + 1 if updated else None

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        candidates = self.due_cases(now)

        sent: List[Dict[str, Any]] = []
        failed = 0
        for case in candidates:
            attempt = self._claim(case, now)
            if attempt is None:
                logger.info(f"Notice for case {case.id} already claimed, skipping")
                continue

            delivered = notify_safely(self.notifier, "recovery_notice", case, attempt)
            note = f"Recovery notice #{attempt}"
            if not delivered:
                note += " (delivery failed)"
                failed += 1
            self.cases.record_action(case.id, RecoveryActionType.MESSAGE_SENT, note=note, now=now)
            sent.append({"case_id": case.id, "attempt": attempt, "delivered": delivered})

        self.db.commit()

        logger.info(f"Dunning run: {len(sent)} notices sent, {failed} failed, {len(candidates)} due")
        return {
            "run_date": now.isoformat(),
            "due": len(candidates),
            "sent": len(sent),
            "failed": failed,
            "notices": sent,
        }

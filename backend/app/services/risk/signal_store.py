"""
Risk Signal Store

Append-only log of billing-derived events per account.
Written by the webhook ingestion boundary; read by the RiskScorer.
Rows are never updated or deleted.
"""
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
import logging

from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models.db_models import RiskSignalEventDB, RiskEventType, utcnow


logger = logging.getLogger(__name__)


# Default severity per signal type (mirrors the scoring weight of each signal)
DEFAULT_SEVERITY = {
    RiskEventType.PAYMENT_FAILED: 50,
    RiskEventType.PAST_DUE: 40,
    RiskEventType.UNPAID: 40,
    RiskEventType.CANCEL_SCHEDULED: 35,
    RiskEventType.TRIAL_ENDING_SOON: 25,
    RiskEventType.RENEWAL_DUE_SOON: 15,
}

if set(DEFAULT_SEVERITY) != set(RiskEventType):
    raise RuntimeError("every RiskEventType needs a default severity")


class RiskSignalStore:
    """Append and read risk signals."""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        account_id: str,
        event_type: RiskEventType,
        occurred_at: Optional[datetime] = None,
        severity: Optional[int] = None,
        source_event_id: Optional[str] = None,
    ) -> RiskSignalEventDB:
        """
        Append one signal. Never updates an existing row.

        Args:
            account_id: Account the signal belongs to
            event_type: Signal kind
            occurred_at: When the billing event happened (defaults to now)
            severity: 0-100; defaults to the signal's scoring weight
            source_event_id: Provider event that produced the signal
        """
        if not account_id:
            raise ValidationError("account_id is required")
        if not isinstance(event_type, RiskEventType):
            try:
                event_type = RiskEventType(event_type)
            except ValueError:
                raise ValidationError(f"Unknown risk event type: {event_type}")

        if severity is None:
            severity = DEFAULT_SEVERITY[event_type]
        if not 0 <= severity <= 100:
            raise ValidationError("severity must be between 0 and 100")

        signal = RiskSignalEventDB(
            id=str(uuid4()),
            account_id=account_id,
            event_type=event_type,
            severity=severity,
            occurred_at=occurred_at or utcnow(),
            source_event_id=source_event_id,
        )
        self.db.add(signal)
        self.db.flush()

        logger.info(
            f"Risk signal appended: account={account_id} type={event_type.value} "
            f"severity={severity} source_event={source_event_id}"
        )
        return signal

    def recent(
        self,
        account_id: str,
        since: datetime,
        event_type: Optional[RiskEventType] = None,
    ) -> List[RiskSignalEventDB]:
        """Signals for an account with occurred_at >= since, newest first."""
        query = self.db.query(RiskSignalEventDB).filter(
            RiskSignalEventDB.account_id == account_id,
            RiskSignalEventDB.occurred_at >= since,
        )
        if event_type is not None:
            query = query.filter(RiskSignalEventDB.event_type == event_type)
        return query.order_by(RiskSignalEventDB.occurred_at.desc()).all()

    def trailing(self, account_id: str, now: datetime, days: int = 7) -> List[RiskSignalEventDB]:
        """Signals in the trailing window ending at `now`."""
        return [
            s for s in self.recent(account_id, since=now - timedelta(days=days))
            if s.occurred_at <= now
        ]

"""
Risk Scorer

Deterministic, additive, capped churn-risk heuristic.

Rules (evaluated in this order; reasons keep the same order):
- +50  at least one payment_failed signal in the trailing 7 days
- +20  two or more payment_failed signals in the trailing 7 days (stacks)
- +40  subscription is past_due OR unpaid (counted once)
- +35  cancellation scheduled at period end
- +25  trial ends strictly within the next 48 hours
- +15  renewal strictly within the next 3 days (active/trialing only)

Final score = min(100, max(0, sum)); reasons truncated to the first 5.
Determinism and explainability are the goal, not predictive accuracy.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...errors import ScoreWriteFailed
from ...models.db_models import (
    RiskSnapshotDB, SubscriptionSnapshotDB, RiskEventType, SubscriptionStatus, utcnow,
)
from .signal_store import RiskSignalStore


logger = logging.getLogger(__name__)


# =============================================================================
# SCORING CONFIGURATION
# =============================================================================

PAYMENT_FAILURE_WINDOW = timedelta(days=7)
TRIAL_ENDING_WINDOW = timedelta(hours=48)
RENEWAL_WINDOW = timedelta(days=3)

POINTS_PAYMENT_FAILED = 50
POINTS_MULTIPLE_FAILURES = 20
POINTS_DELINQUENT = 40
POINTS_CANCEL_SCHEDULED = 35
POINTS_TRIAL_ENDING = 25
POINTS_RENEWAL_DUE = 15

MAX_SCORE = 100
MIN_SCORE = 0
MAX_REASONS = 5

REASON_PAYMENT_FAILED = "Payment failed in the last 7 days"
REASON_MULTIPLE_FAILURES = "Multiple payment failures in the last 7 days"
REASON_PAST_DUE = "Subscription is past due"
REASON_UNPAID = "Subscription is unpaid"
REASON_CANCEL_SCHEDULED = "Cancellation scheduled at period end"
REASON_TRIAL_ENDING = "Trial ends within 48 hours"
REASON_RENEWAL_DUE = "Renewal due within 3 days"

RENEWAL_SCORED_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}

# Accounts the batch recompute re-scores
SCORED_SUBSCRIPTION_STATUSES = [
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
]


@dataclass
class RiskScore:
    """Bounded score plus the reasons that fired, in evaluation order."""
    score: int
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"score": self.score, "reasons": list(self.reasons)}


def compute_risk_score(signals: Iterable, subscription, now: datetime) -> RiskScore:
    """
    Pure scoring function.

    Args:
        signals: Risk signal rows (anything with event_type and occurred_at)
        subscription: Current subscription snapshot, or None when unknown
        now: Evaluation time (naive UTC)

    Returns:
        RiskScore with score in [0, 100] and at most 5 reasons
    """
    total = 0
    reasons: List[str] = []

    window_start = now - PAYMENT_FAILURE_WINDOW
    failures = [
        s for s in signals
        if s.event_type == RiskEventType.PAYMENT_FAILED and window_start <= s.occurred_at <= now
    ]
    if failures:
        total += POINTS_PAYMENT_FAILED
        reasons.append(REASON_PAYMENT_FAILED)
        if len(failures) >= 2:
            total += POINTS_MULTIPLE_FAILURES
            reasons.append(REASON_MULTIPLE_FAILURES)

    if subscription is not None:
        if subscription.status == SubscriptionStatus.PAST_DUE:
            total += POINTS_DELINQUENT
            reasons.append(REASON_PAST_DUE)
        elif subscription.status == SubscriptionStatus.UNPAID:
            total += POINTS_DELINQUENT
            reasons.append(REASON_UNPAID)

        if subscription.cancel_at_period_end:
            total += POINTS_CANCEL_SCHEDULED
            reasons.append(REASON_CANCEL_SCHEDULED)

        trial_end = subscription.trial_end
        if trial_end is not None and now < trial_end <= now + TRIAL_ENDING_WINDOW:
            total += POINTS_TRIAL_ENDING
            reasons.append(REASON_TRIAL_ENDING)

        period_end = subscription.current_period_end
        if (
            subscription.status in RENEWAL_SCORED_STATUSES
            and period_end is not None
            and now < period_end <= now + RENEWAL_WINDOW
        ):
            total += POINTS_RENEWAL_DUE
            reasons.append(REASON_RENEWAL_DUE)

    score = min(MAX_SCORE, max(MIN_SCORE, total))
    return RiskScore(score=score, reasons=reasons[:MAX_REASONS])


# =============================================================================
# SCORER SERVICE
# =============================================================================

class RiskScorer:
    """
    Scores an account and upserts its RiskSnapshot.

    Reads the signal log and the latest subscription snapshot, never writes
    to either. The only side effect is the snapshot upsert; a failed write
    raises ScoreWriteFailed and leaves the previous snapshot untouched.
    """

    def __init__(self, db: Session, signal_store: Optional[RiskSignalStore] = None):
        self.db = db
        self.signals = signal_store or RiskSignalStore(db)

    def get_subscription(self, account_id: str) -> Optional[SubscriptionSnapshotDB]:
        return self.db.query(SubscriptionSnapshotDB).filter(
            SubscriptionSnapshotDB.account_id == account_id
        ).first()

    def evaluate(self, account_id: str, now: Optional[datetime] = None) -> RiskScore:
        """Compute the score without persisting it."""
        now = now or utcnow()
        signals = self.signals.recent(
            account_id,
            since=now - PAYMENT_FAILURE_WINDOW,
            event_type=RiskEventType.PAYMENT_FAILED,
        )
        return compute_risk_score(signals, self.get_subscription(account_id), now)

    def score(self, account_id: str, now: Optional[datetime] = None) -> RiskScore:
        """
        Score an account and upsert its snapshot.

        Raises:
            ScoreWriteFailed: the snapshot could not be written
        """
        now = now or utcnow()
        result = self.evaluate(account_id, now)

        try:
            self._upsert_snapshot(account_id, result, now)
        except SQLAlchemyError as e:
            logger.error(f"Risk snapshot write failed for account {account_id}: {e}")
            raise ScoreWriteFailed(f"Failed to update risk snapshot for account {account_id}") from e

        logger.info(f"Risk scored: account={account_id} score={result.score} reasons={len(result.reasons)}")
        return result

    def get_snapshot(self, account_id: str) -> Optional[RiskSnapshotDB]:
        return self.db.query(RiskSnapshotDB).filter(RiskSnapshotDB.account_id == account_id).first()

    def _upsert_snapshot(self, account_id: str, result: RiskScore, now: datetime) -> None:
        """Overwrite the account's snapshot, inserting it on first score."""
        with self.db.begin_nested():
            updated = self.db.query(RiskSnapshotDB).filter(
                RiskSnapshotDB.account_id == account_id
            ).update(
                {
                    RiskSnapshotDB.score: result.score,
                    RiskSnapshotDB.top_reasons: list(result.reasons),
                    RiskSnapshotDB.updated_at: now,
                },
                synchronize_session=False,
            )
            if updated:
                return

        try:
            with self.db.begin_nested():
                self.db.add(RiskSnapshotDB(
                    account_id=account_id,
                    score=result.score,
                    top_reasons=list(result.reasons),
                    updated_at=now,
                ))
                self.db.flush()
        except IntegrityError:
            # A concurrent scorer inserted first; overwrite its row.
            with self.db.begin_nested():
                self.db.query(RiskSnapshotDB).filter(
                    RiskSnapshotDB.account_id == account_id
                ).update(
                    {
                        RiskSnapshotDB.score: result.score,
                        RiskSnapshotDB.top_reasons: list(result.reasons),
                        RiskSnapshotDB.updated_at: now,
                    },
                    synchronize_session=False,
                )

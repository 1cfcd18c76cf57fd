"""
Priority Ranker

Orders recovery cases by urgency.

priority = amount_at_risk / hours_remaining
    hours_remaining = max(EPSILON_HOURS, (deadline_at - now) in hours)
    a case with zero or negative time left has priority 0

Ordering (stable):
    1. open cases still inside their window, highest priority first
    2. open cases past their deadline (priority 0)
    3. recovered / expired cases
Ties go to the earliest deadline_at, then to input order.
"""
from datetime import datetime
from typing import List, Optional, Sequence

from ...models.db_models import RecoveryCaseStatus, utcnow


EPSILON_HOURS = 1e-6

_GROUP_LIVE = 0
_GROUP_LAPSED = 1
_GROUP_CLOSED = 2


def calculate_priority(amount_at_risk, deadline_at: datetime, now: datetime) -> float:
    """Revenue per remaining hour; 0 once the deadline has passed."""
    hours = (deadline_at - now).total_seconds() / 3600.0
    if hours <= 0:
        return 0.0
    return float(amount_at_risk) / max(EPSILON_HOURS, hours)


def _sort_key(case, now: datetime):
    if case.status != RecoveryCaseStatus.OPEN:
        return (_GROUP_CLOSED, 0.0, case.deadline_at)
    priority = calculate_priority(case.amount_at_risk, case.deadline_at, now)
    group = _GROUP_LIVE if case.deadline_at > now else _GROUP_LAPSED
    return (group, -priority, case.deadline_at)


def rank(cases: Sequence, now: Optional[datetime] = None) -> List:
    """Return a new list ordered by urgency. The input is not modified."""
    now = now or utcnow()
    return sorted(cases, key=lambda case: _sort_key(case, now))

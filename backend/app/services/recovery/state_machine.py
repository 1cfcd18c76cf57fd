"""
Recovery Case State Machine

    OPEN -> RECOVERED
    OPEN -> EXPIRED

OPEN is initial, both others are terminal. A case past its deadline is
treated as EXPIRED by every read path, whatever its stored status says.
"""
from datetime import datetime, timedelta
from typing import Tuple, Optional

from ...models.db_models import RecoveryCaseStatus, RecoveryActionType


CASE_WINDOW = timedelta(hours=48)
HIGH_RISK_WINDOW = timedelta(hours=24)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

CASE_STATE_CONFIG = {
    RecoveryCaseStatus.OPEN: {
        "description": "Payment failed, recovery window running",
        "allowed_transitions": [RecoveryCaseStatus.RECOVERED, RecoveryCaseStatus.EXPIRED],
        "terminal": False,
        "action_type": None,
    },
    RecoveryCaseStatus.RECOVERED: {
        "description": "Invoice paid inside the window, revenue attributed",
        "allowed_transitions": [],  # Terminal state
        "terminal": True,
        "action_type": RecoveryActionType.MARKED_RECOVERED,
    },
    RecoveryCaseStatus.EXPIRED: {
        "description": "Deadline passed without recovery",
        "allowed_transitions": [],  # Terminal state
        "terminal": True,
        "action_type": RecoveryActionType.MARKED_EXPIRED,
    },
}

if set(CASE_STATE_CONFIG) != set(RecoveryCaseStatus):
    raise RuntimeError("every case status needs a state config")


def is_terminal(status: RecoveryCaseStatus) -> bool:
    return CASE_STATE_CONFIG[status]["terminal"]


def can_transition(current: RecoveryCaseStatus, target: RecoveryCaseStatus) -> Tuple[bool, Optional[str]]:
    """
    Returns:
        Tuple of (is_allowed, error_message)
    """
    if target in CASE_STATE_CONFIG[current]["allowed_transitions"]:
        return True, None
    return False, f"Invalid transition: {current.value} -> {target.value}"


def compute_deadline(opened_at: datetime) -> datetime:
    """deadline_at is fixed at creation and never extended."""
    return opened_at + CASE_WINDOW


def is_past_deadline(deadline_at: datetime, now: datetime) -> bool:
    return now > deadline_at


def effective_status(case, now: datetime) -> RecoveryCaseStatus:
    """Stored status, except an OPEN case past its deadline reads as EXPIRED."""
    if case.status == RecoveryCaseStatus.OPEN and is_past_deadline(case.deadline_at, now):
        return RecoveryCaseStatus.EXPIRED
    return case.status


def hours_remaining(case, now: datetime) -> float:
    """Signed hours until the deadline (negative once lapsed)."""
    return (case.deadline_at - now).total_seconds() / 3600.0


def is_high_risk(case, now: datetime) -> bool:
    """Open, at most 24h left, and nobody has acted on it yet."""
    if effective_status(case, now) != RecoveryCaseStatus.OPEN:
        return False
    remaining = case.deadline_at - now
    return remaining <= HIGH_RISK_WINDOW and case.first_action_at is None

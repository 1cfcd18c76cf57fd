"""
Payment Recovery

Time-boxed recovery cases opened on payment failure, ranked by urgency and
resolved exactly once into the attribution ledger.
"""
from .state_machine import (
    CASE_STATE_CONFIG,
    CASE_WINDOW,
    can_transition,
    compute_deadline,
    effective_status,
    is_high_risk,
)
from .churn_reasons import (
    CHURN_REASON_LABELS,
    CHURN_RECOMMENDATIONS,
    classify_failure,
    get_reason_label,
    get_recommendation,
)
from .priority_ranker import calculate_priority, rank
from .attribution_ledger import AttributionLedger, LedgerRecordResult
from .case_manager import RecoveryCaseManager, TransitionOutcome, TransitionResult, CaseOpenResult
from .expiry_sweeper import ExpirySweeper
from .dunning import DunningScheduler, MAX_RECOVERY_NOTICES

__all__ = [
    "CASE_STATE_CONFIG",
    "CASE_WINDOW",
    "can_transition",
    "compute_deadline",
    "effective_status",
    "is_high_risk",
    "CHURN_REASON_LABELS",
    "CHURN_RECOMMENDATIONS",
    "classify_failure",
    "get_reason_label",
    "get_recommendation",
    "calculate_priority",
    "rank",
    "AttributionLedger",
    "LedgerRecordResult",
    "RecoveryCaseManager",
    "TransitionOutcome",
    "TransitionResult",
    "CaseOpenResult",
    "ExpirySweeper",
    "DunningScheduler",
    "MAX_RECOVERY_NOTICES",
]

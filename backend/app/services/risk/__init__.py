"""
Churn Risk Scoring

- RiskSignalStore: append-only billing signal log
- compute_risk_score / RiskScorer: additive, capped heuristic + snapshot upsert
- RiskRecomputeJob: rate-limited batch re-score of at-risk accounts
"""
from .signal_store import RiskSignalStore, DEFAULT_SEVERITY
from .risk_scorer import RiskScore, RiskScorer, compute_risk_score
from .recompute import RiskRecomputeJob

__all__ = [
    "RiskSignalStore",
    "DEFAULT_SEVERITY",
    "RiskScore",
    "RiskScorer",
    "compute_risk_score",
    "RiskRecomputeJob",
]

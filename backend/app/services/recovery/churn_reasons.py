"""
Churn Reason Classification

Deterministic mapping from a provider decline code to the closed ChurnReason
enum, plus the display label and single recommended operator action for each
reason. Recommendations are display-only; nothing here automates outreach.
"""
from typing import Optional

from ...models.db_models import ChurnReason


CHURN_REASON_LABELS = {
    ChurnReason.CARD_EXPIRED: "Card Expired",
    ChurnReason.INSUFFICIENT_FUNDS: "Insufficient Funds",
    ChurnReason.BANK_DECLINE: "Bank Decline",
    ChurnReason.NO_RETRY_ATTEMPTED: "No Retry Attempted",
    ChurnReason.UNKNOWN_FAILURE: "Unknown Failure",
}

CHURN_RECOMMENDATIONS = {
    ChurnReason.CARD_EXPIRED: "Ask customer to update payment method",
    ChurnReason.INSUFFICIENT_FUNDS: "Retry payment in 24 hours",
    ChurnReason.BANK_DECLINE: "Send a friendly recovery message",
    ChurnReason.NO_RETRY_ATTEMPTED: "Enable retry immediately",
    ChurnReason.UNKNOWN_FAILURE: "Manual follow-up required",
}

# Import-time completeness checks: a new ChurnReason must be added to both tables
if set(CHURN_REASON_LABELS) != set(ChurnReason):
    raise RuntimeError("missing churn reason label")
if set(CHURN_RECOMMENDATIONS) != set(ChurnReason):
    raise RuntimeError("missing churn reason recommendation")


# Provider decline codes, grouped by reason
EXPIRED_CARD_CODES = {"expired_card", "card_expired"}
INSUFFICIENT_FUNDS_CODES = {"insufficient_funds", "card_velocity_exceeded", "withdrawal_count_limit_exceeded"}
BANK_DECLINE_CODES = {
    "generic_decline",
    "do_not_honor",
    "card_declined",
    "transaction_not_allowed",
    "call_issuer",
    "issuer_not_available",
    "try_again_later",
    "processing_error",
    "restricted_card",
    "pickup_card",
}


def classify_failure(decline_code: Optional[str], retry_scheduled: bool = True) -> ChurnReason:
    """
    Classify a failed payment.

    Args:
        decline_code: Provider decline code (case-insensitive), may be None
        retry_scheduled: Whether the provider scheduled an automatic retry

    Returns:
        ChurnReason
    """
    code = (decline_code or "").strip().lower()

    if code in EXPIRED_CARD_CODES:
        return ChurnReason.CARD_EXPIRED
    if code in INSUFFICIENT_FUNDS_CODES:
        return ChurnReason.INSUFFICIENT_FUNDS
    if code in BANK_DECLINE_CODES:
        return ChurnReason.BANK_DECLINE
    if not retry_scheduled:
        return ChurnReason.NO_RETRY_ATTEMPTED
    return ChurnReason.UNKNOWN_FAILURE


def get_reason_label(reason: ChurnReason) -> str:
    return CHURN_REASON_LABELS[ChurnReason(reason)]


def get_recommendation(reason: ChurnReason) -> str:
    return CHURN_RECOMMENDATIONS[ChurnReason(reason)]

"""ChurnShield Recovery Engine - Data Models"""
from .db_models import (
    # Enums
    AccountRole, RiskEventType, SubscriptionStatus, ChurnReason,
    RecoveryCaseStatus, RecoveryActionType, CancelSessionStatus, OfferType,
    CompletionAction,
    # Tables
    AccountDB, SubscriptionSnapshotDB, RiskSignalEventDB, RiskSnapshotDB,
    RecoveryCaseDB, RecoveryActionDB, LedgerEntryDB, ProcessedEventDB,
    OfferConfigDB, CancelSessionDB, SavedCustomerDB,
    utcnow,
)

__all__ = [
    "AccountRole", "RiskEventType", "SubscriptionStatus", "ChurnReason",
    "RecoveryCaseStatus", "RecoveryActionType", "CancelSessionStatus", "OfferType",
    "CompletionAction",
    "AccountDB", "SubscriptionSnapshotDB", "RiskSignalEventDB", "RiskSnapshotDB",
    "RecoveryCaseDB", "RecoveryActionDB", "LedgerEntryDB", "ProcessedEventDB",
    "OfferConfigDB", "CancelSessionDB", "SavedCustomerDB",
    "utcnow",
]

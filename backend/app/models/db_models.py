"""
ChurnShield Recovery Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage

Integrity rules live in the schema, not only in application code:
- at most one OPEN recovery case per (owner_account_id, invoice_reference)
- one ledger entry per (recovery_case_id, source_event_id), source_event_id unique
- one risk snapshot per account, one subscription snapshot per account
- one processed-event marker per webhook event id
- non-negative amounts, scores and severities within 0-100 (CHECK constraints)
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, Index, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column_type(enum_cls):
    """Store enum values (lowercase strings) rather than member names."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# =============================================================================
# ENUMS
# =============================================================================

class AccountRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class RiskEventType(str, Enum):
    """Billing-derived signals appended to the risk signal log."""
    PAYMENT_FAILED = "payment_failed"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCEL_SCHEDULED = "cancel_scheduled"
    TRIAL_ENDING_SOON = "trial_ending_soon"
    RENEWAL_DUE_SOON = "renewal_due_soon"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class ChurnReason(str, Enum):
    """Fixed list of payment-failure reasons - no additions without updating every table keyed by it."""
    CARD_EXPIRED = "card_expired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BANK_DECLINE = "bank_decline"
    NO_RETRY_ATTEMPTED = "no_retry_attempted"
    UNKNOWN_FAILURE = "unknown_failure"


class RecoveryCaseStatus(str, Enum):
    OPEN = "open"
    RECOVERED = "recovered"
    EXPIRED = "expired"


class RecoveryActionType(str, Enum):
    MESSAGE_SENT = "message_sent"
    NOTE = "note"
    MARKED_RECOVERED = "marked_recovered"
    MARKED_EXPIRED = "marked_expired"


class CancelSessionStatus(str, Enum):
    SURVEY_PENDING = "survey_pending"
    SURVEY_COMPLETED = "survey_completed"
    OFFER_PRESENTED = "offer_presented"
    SAVED = "saved"
    CANCELLED = "cancelled"


class OfferType(str, Enum):
    NONE = "none"
    DISCOUNT = "discount"
    PAUSE = "pause"


class CompletionAction(str, Enum):
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


# =============================================================================
# ACCOUNTS / SUBSCRIPTION STATE (trusted read of the billing provider)
# =============================================================================

class AccountDB(Base):
    """Business account owning cases, ledger entries, sessions and configs."""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(_enum_column_type(AccountRole), nullable=False, default=AccountRole.USER)
    created_at = Column(DateTime, default=utcnow)


class SubscriptionSnapshotDB(Base):
    """
    Latest known subscription state per account.
    Written only by the webhook boundary; stale (older) updates are ignored.
    """
    __tablename__ = "subscription_snapshots"

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    provider_subscription_id = Column(String(255), nullable=True)

    status = Column(_enum_column_type(SubscriptionStatus), nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    # occurred_at of the provider event that produced this state
    source_updated_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# RISK SIGNALS / SNAPSHOTS
# =============================================================================

class RiskSignalEventDB(Base):
    """
    Append-only log of billing-derived risk signals.
    Immutable once written - never updated or deleted.
    """
    __tablename__ = "risk_signal_events"

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(_enum_column_type(RiskEventType), nullable=False)
    severity = Column(Integer, nullable=False)  # 0-100
    occurred_at = Column(DateTime, nullable=False)

    # Provider event that produced this signal (nullable for derived signals)
    source_event_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_risk_signal_account_time", "account_id", "occurred_at"),
        CheckConstraint("severity BETWEEN 0 AND 100", name="ck_risk_signal_severity"),
    )


class RiskSnapshotDB(Base):
    """
    One row per account, fully overwritten on each recompute.
    Derived state - never hand-edited.
    """
    __tablename__ = "risk_snapshots"

    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    score = Column(Integer, nullable=False)  # 0-100, clamped
    top_reasons = Column(JSON, nullable=False, default=list)  # max 5, evaluation order
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("score BETWEEN 0 AND 100", name="ck_risk_snapshot_score"),
    )


# =============================================================================
# RECOVERY CASES / ATTRIBUTION LEDGER
# =============================================================================

class RecoveryCaseDB(Base):
    """
    Time-boxed record tracking one failed-payment incident.

    Status moves only OPEN -> RECOVERED or OPEN -> EXPIRED.
    deadline_at is fixed at creation (opened_at + 48h) and never extended.
    Terminal once resolved_at is set; never deleted.
    """
    __tablename__ = "recovery_cases"

    id = Column(String(36), primary_key=True)  # UUID
    owner_account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_reference = Column(String(255), nullable=False)
    invoice_reference = Column(String(255), nullable=True)

    amount_at_risk = Column(Numeric(12, 2), nullable=False)  # non-negative
    currency = Column(String(3), nullable=False, default="USD")
    churn_reason = Column(_enum_column_type(ChurnReason), nullable=False, default=ChurnReason.UNKNOWN_FAILURE)

    status = Column(_enum_column_type(RecoveryCaseStatus), nullable=False, default=RecoveryCaseStatus.OPEN)
    opened_at = Column(DateTime, nullable=False)
    deadline_at = Column(DateTime, nullable=False)
    first_action_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    # Automated recovery notices (first notice, then one follow-up)
    messages_sent = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)

    # Provider event that opened the case (None for manually created cases)
    source_event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    actions = relationship("RecoveryActionDB", back_populates="recovery_case", order_by="RecoveryActionDB.created_at")
    ledger_entries = relationship("LedgerEntryDB", back_populates="recovery_case")

    __table_args__ = (
        # At most one open case per invoice. NULL invoice references never collide.
        Index(
            "uq_recovery_case_open_invoice",
            "owner_account_id",
            "invoice_reference",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
        Index("idx_recovery_case_status_deadline", "status", "deadline_at"),
        CheckConstraint("amount_at_risk >= 0", name="ck_recovery_case_amount"),
        CheckConstraint("messages_sent >= 0", name="ck_recovery_case_messages_sent"),
    )


class RecoveryActionDB(Base):
    """
    Append-only log of operator actions on a recovery case.
    """
    __tablename__ = "recovery_actions"

    id = Column(String(36), primary_key=True)  # UUID
    recovery_case_id = Column(String(36), ForeignKey("recovery_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    action_type = Column(_enum_column_type(RecoveryActionType), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    recovery_case = relationship("RecoveryCaseDB", back_populates="actions")


class LedgerEntryDB(Base):
    """
    Append-only record crediting recovered revenue to a case, exactly once.

    (recovery_case_id, source_event_id) is the idempotency boundary against
    duplicate webhook delivery. Entries are never updated or deleted.
    """
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True)  # UUID
    recovery_case_id = Column(String(36), ForeignKey("recovery_cases.id"), nullable=False, index=True)
    owner_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    invoice_reference = Column(String(255), nullable=False)

    amount_recovered = Column(Numeric(12, 2), nullable=False)  # non-negative
    currency = Column(String(3), nullable=False)
    source_event_id = Column(String(255), nullable=False, unique=True)

    recovered_at = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    recovery_case = relationship("RecoveryCaseDB", back_populates="ledger_entries")

    __table_args__ = (
        UniqueConstraint("recovery_case_id", "source_event_id", name="uq_ledger_case_source_event"),
        CheckConstraint("amount_recovered >= 0", name="ck_ledger_amount"),
    )


class ProcessedEventDB(Base):
    """
    Exactly-once marker for webhook deliveries.
    The "already processed" check is a single primary-key lookup.
    """
    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(64), nullable=False)
    account_id = Column(String(36), nullable=True)
    # Invoice the event refers to, so a late payment failure can find an earlier payment
    invoice_reference = Column(String(255), nullable=True)
    occurred_at = Column(DateTime, nullable=True)
    outcome = Column(JSON, nullable=True)
    processed_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_processed_event_invoice", "account_id", "invoice_reference"),
    )


# =============================================================================
# CANCEL FLOW (widget sessions, offer configuration)
# =============================================================================

class OfferConfigDB(Base):
    """
    Versioned cancel-flow configuration per account.
    Each publish creates a new immutable version.
    """
    __tablename__ = "offer_configs"

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)

    survey_options = Column(JSON, nullable=False)
    offer_settings = Column(JSON, nullable=False)
    branding = Column(JSON, nullable=False)
    widget_settings = Column(JSON, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "version", name="uq_offer_config_version"),
    )


class CancelSessionDB(Base):
    """
    Token-addressed cancel-flow session.

    The primary key is the SHA-256 of the cancel link token; the raw token is
    never stored. Status only moves forward through the session state machine.
    """
    __tablename__ = "cancel_sessions"

    id = Column(String(64), primary_key=True)  # sha256 hex of the token
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_reference = Column(String(255), nullable=True)
    subscription_reference = Column(String(255), nullable=True)
    config_version = Column(Integer, nullable=False)  # pinned offer config snapshot

    status = Column(_enum_column_type(CancelSessionStatus), nullable=False, default=CancelSessionStatus.SURVEY_PENDING)
    exit_reason = Column(String(255), nullable=True)
    custom_feedback = Column(Text, nullable=True)
    offer_type_presented = Column(_enum_column_type(OfferType), nullable=True)
    offer_accepted = Column(Boolean, nullable=True)
    completion_action = Column(_enum_column_type(CompletionAction), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class SavedCustomerDB(Base):
    """
    Record of a customer retained by an accepted offer.
    One per saved session.
    """
    __tablename__ = "saved_customers"

    id = Column(String(36), primary_key=True)  # UUID
    cancel_session_id = Column(String(64), ForeignKey("cancel_sessions.id"), nullable=False, unique=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_reference = Column(String(255), nullable=True)
    subscription_reference = Column(String(255), nullable=True)

    save_type = Column(_enum_column_type(OfferType), nullable=False)
    discount_percentage = Column(Integer, nullable=True)
    discount_duration_months = Column(Integer, nullable=True)
    pause_months = Column(Integer, nullable=True)

    # Outcome of the external apply-offer call
    offer_applied = Column(Boolean, default=False, nullable=False)
    apply_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

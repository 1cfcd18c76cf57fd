"""
Recovery Case Manager

Creates, transitions and expires time-boxed recovery cases.

    OPEN -> RECOVERED   (invoice paid inside the 48h window)
    OPEN -> EXPIRED     (deadline passed, or expired by the owner)

Every mutation is a guarded write:
- open: partial unique index on (owner, invoice) WHERE status = 'open'
- recover / expire: compare-and-swap on status (UPDATE ... WHERE status = 'open')
- first_action_at: UPDATE ... WHERE first_action_at IS NULL

Transitioning a case that is no longer open returns ALREADY_RESOLVED,
which callers treat as success.

Methods flush; the caller (router, job, webhook processor) owns the commit.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...errors import InvalidTransition, NotFound, UpstreamUnavailable, ValidationError
from ...models.db_models import (
    RecoveryCaseDB, RecoveryActionDB, RecoveryCaseStatus, RecoveryActionType, ChurnReason, utcnow,
)
from ..collaborators import notify_safely
from .attribution_ledger import AttributionLedger, normalize_amount, normalize_currency
from .churn_reasons import get_reason_label, get_recommendation
from .priority_ranker import rank
from .state_machine import (
    compute_deadline, effective_status, hours_remaining, is_high_risk, is_past_deadline,
)


logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    RECOVERED = "recovered"
    EXPIRED = "expired"
    ALREADY_RESOLVED = "already_resolved"


@dataclass
class CaseOpenResult:
    created: bool
    case: RecoveryCaseDB


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    case: RecoveryCaseDB
    ledger_created: bool = False
    source_event_id: Optional[str] = None

    @property
    def already_resolved(self) -> bool:
        return self.outcome == TransitionOutcome.ALREADY_RESOLVED


class RecoveryCaseManager:
    """
    Usage:
        manager = RecoveryCaseManager(db)
        opened = manager.open_case(owner_id, "cus_1", 49, invoice_reference="in_1")
        result = manager.recover(opened.case.id, source_event_id="evt_paid_1")
        db.commit()
    """

    def __init__(self, db: Session, ledger: Optional[AttributionLedger] = None, notifier=None):
        self.db = db
        self.ledger = ledger or AttributionLedger(db)
        self.notifier = notifier

    # =========================================================================
    # OPEN
    # =========================================================================

    def open_case(
        self,
        owner_account_id: str,
        customer_reference: str,
        amount_at_risk,
        currency: str = "USD",
        invoice_reference: Optional[str] = None,
        churn_reason: ChurnReason = ChurnReason.UNKNOWN_FAILURE,
        opened_at: Optional[datetime] = None,
        source_event_id: Optional[str] = None,
    ) -> CaseOpenResult:
        """
        Open a case for a failed payment. Idempotent per invoice: while an
        open case exists for (owner, invoice) it is returned with created=False.

        Raises:
            ValidationError: missing owner/customer, negative amount, bad currency or reason
        """
        if not owner_account_id:
            raise ValidationError("owner_account_id is required")
        if not customer_reference:
            raise ValidationError("customer_reference is required")
        amount = normalize_amount(amount_at_risk)
        currency = normalize_currency(currency)
        try:
            churn_reason = ChurnReason(churn_reason)
        except ValueError:
            raise ValidationError(f"Unknown churn reason: {churn_reason}")

        opened_at = opened_at or utcnow()

        if invoice_reference:
            existing = self.find_open_case_for_invoice(owner_account_id, invoice_reference)
            if existing:
                if not is_past_deadline(existing.deadline_at, opened_at):
                    logger.info(
                        f"Open case already exists for invoice {invoice_reference}: "
                        f"case={existing.id} source_event={source_event_id}"
                    )
                    return CaseOpenResult(created=False, case=existing)
                # The lapsed case blocks the open-invoice index until it is materialized
                self._materialize_expiry(existing, opened_at)

        case = RecoveryCaseDB(
            id=str(uuid4()),
            owner_account_id=owner_account_id,
            customer_reference=customer_reference,
            invoice_reference=invoice_reference,
            amount_at_risk=amount,
            currency=currency,
            churn_reason=churn_reason,
            status=RecoveryCaseStatus.OPEN,
            opened_at=opened_at,
            deadline_at=compute_deadline(opened_at),
            source_event_id=source_event_id,
        )
        try:
            with self.db.begin_nested():
                self.db.add(case)
                self.db.flush()
        except IntegrityError:
            existing = self.find_open_case_for_invoice(owner_account_id, invoice_reference) if invoice_reference else None
            if existing is None:
                raise
            logger.info(f"Concurrent open for invoice {invoice_reference} resolved to case {existing.id}")
            return CaseOpenResult(created=False, case=existing)

        logger.info(
            f"Recovery case opened: case={case.id} owner={owner_account_id} invoice={invoice_reference} "
            f"amount={amount} {currency} reason={churn_reason.value} deadline={case.deadline_at.isoformat()}"
        )
        return CaseOpenResult(created=True, case=case)

    # =========================================================================
    # RECOVER
    # =========================================================================

    def recover(
        self,
        case_id: str,
        source_event_id: Optional[str] = None,
        amount_recovered=None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        owner_account_id: Optional[str] = None,
        source_prefix: str = "sys",
    ) -> TransitionResult:
        """
        Move an open case to RECOVERED and write exactly one ledger entry.

        Args:
            case_id: Case to recover
            source_event_id: Provider event id. When omitted one is generated
                as "<source_prefix>_<hex>" for a successful transition only.
            amount_recovered: Defaults to the case's amount_at_risk
            notes: Stored on the ledger entry and the action log
            now: Transition time
            owner_account_id: When given, the case must belong to this account
            source_prefix: Prefix for generated source event ids

        Returns:
            TransitionResult. ALREADY_RESOLVED when the case was not open or
            its deadline had passed (the expiry is materialized then). For a
            case that is already RECOVERED, a caller-supplied source_event_id
            backfills a missing ledger entry.

        Raises:
            NotFound: unknown case, or owned by another account
            ValidationError: invalid amount_recovered
            InvalidTransition: source_event_id is already credited to another case
        """
        now = now or utcnow()
        case = self.get_case(case_id, owner_account_id)
        if amount_recovered is not None:
            amount_recovered = normalize_amount(amount_recovered)
        if source_event_id:
            claimed = self.ledger.get_by_source_event(source_event_id)
            if claimed is not None and claimed.recovery_case_id != case.id:
                raise InvalidTransition(
                    f"Source event {source_event_id} is already attributed to case {claimed.recovery_case_id}"
                )

        if case.status == RecoveryCaseStatus.OPEN and is_past_deadline(case.deadline_at, now):
            self._materialize_expiry(case, now)
            return TransitionResult(outcome=TransitionOutcome.ALREADY_RESOLVED, case=case)

        if case.status != RecoveryCaseStatus.OPEN:
            return self._already_resolved(case, source_event_id, amount_recovered, notes)

        updated = self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.id == case.id,
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
            RecoveryCaseDB.deadline_at >= now,
        ).update(
            {
                RecoveryCaseDB.status: RecoveryCaseStatus.RECOVERED,
                RecoveryCaseDB.resolved_at: now,
                RecoveryCaseDB.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.refresh(case)

        if updated == 0:
            logger.info(f"Recover lost race for case {case.id}, now {case.status.value}")
            return self._already_resolved(case, source_event_id, amount_recovered, notes)

        logger.info(f"Recovery case recovered: case={case.id} source_event={source_event_id}")

        source_event_id = source_event_id or f"{source_prefix}_{uuid4().hex}"
        amount = amount_recovered if amount_recovered is not None else case.amount_at_risk
        ledger_created = self._write_ledger(case, source_event_id, amount, notes, source_prefix)

        self.record_action(case.id, RecoveryActionType.MARKED_RECOVERED, note=notes, now=now)
        self.db.refresh(case)
        notify_safely(self.notifier, "case_recovered", case, amount, case.currency)

        return TransitionResult(
            outcome=TransitionOutcome.RECOVERED,
            case=case,
            ledger_created=ledger_created,
            source_event_id=source_event_id,
        )

    def _already_resolved(self, case, source_event_id, amount_recovered, notes) -> TransitionResult:
        ledger_created = False
        if (
            case.status == RecoveryCaseStatus.RECOVERED
            and source_event_id
            and not self.ledger.entries_for_case(case.id)
        ):
            amount = amount_recovered if amount_recovered is not None else case.amount_at_risk
            ledger_created = self._write_ledger(case, source_event_id, amount, notes)
            if ledger_created:
                logger.info(f"Backfilled ledger entry for case {case.id} from source event {source_event_id}")
        else:
            logger.info(f"Case {case.id} already resolved ({case.status.value}), skipping")
        return TransitionResult(
            outcome=TransitionOutcome.ALREADY_RESOLVED,
            case=case,
            ledger_created=ledger_created,
            source_event_id=source_event_id,
        )

    def _write_ledger(self, case, source_event_id, amount, notes, source_prefix: str = "sys") -> bool:
        """Ledger failures after a transition are logged; replaying the source event backfills."""
        invoice_reference = case.invoice_reference or f"{source_prefix}_inv_{case.id[:8]}"
        try:
            result = self.ledger.record(
                case.id,
                source_event_id,
                amount,
                case.currency,
                invoice_reference=invoice_reference,
                recovered_at=case.resolved_at,
                notes=notes,
            )
            return result.created
        except (UpstreamUnavailable, SQLAlchemyError) as e:
            logger.error(f"Ledger write failed for case {case.id} source_event={source_event_id}: {e}")
            return False

    # =========================================================================
    # EXPIRE
    # =========================================================================

    def expire(
        self,
        case_id: str,
        now: Optional[datetime] = None,
        owner_account_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransitionResult:
        """Manually expire an open case (owner action)."""
        now = now or utcnow()
        case = self.get_case(case_id, owner_account_id)

        if case.status == RecoveryCaseStatus.OPEN and is_past_deadline(case.deadline_at, now):
            self._materialize_expiry(case, now)
            return TransitionResult(outcome=TransitionOutcome.ALREADY_RESOLVED, case=case)

        updated = self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.id == case.id,
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
        ).update(
            {
                RecoveryCaseDB.status: RecoveryCaseStatus.EXPIRED,
                RecoveryCaseDB.resolved_at: now,
                RecoveryCaseDB.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.refresh(case)

        if updated == 0:
            logger.info(f"Case {case.id} already resolved ({case.status.value}), skipping expire")
            return TransitionResult(outcome=TransitionOutcome.ALREADY_RESOLVED, case=case)

        self.record_action(case.id, RecoveryActionType.MARKED_EXPIRED, note=note, now=now)
        self.db.refresh(case)
        logger.info(f"Recovery case expired manually: case={case.id}")
        return TransitionResult(outcome=TransitionOutcome.EXPIRED, case=case)

    def _materialize_expiry(self, case: RecoveryCaseDB, now: datetime) -> bool:
        """Write EXPIRED for an open case past its deadline. resolved_at = deadline_at."""
        updated = self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.id == case.id,
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
            RecoveryCaseDB.deadline_at < now,
        ).update(
            {
                RecoveryCaseDB.status: RecoveryCaseStatus.EXPIRED,
                RecoveryCaseDB.resolved_at: RecoveryCaseDB.deadline_at,
                RecoveryCaseDB.updated_at: now,
            },
            synchronize_session=False,
        )
        self.db.refresh(case)
        if updated:
            logger.info(f"Recovery case expired at deadline: case={case.id} deadline={case.deadline_at.isoformat()}")
        return bool(updated)

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def record_action(
        self,
        case_id: str,
        action_type: RecoveryActionType,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecoveryActionDB:
        """Append an action; the first action on a case stamps first_action_at once."""
        try:
            action_type = RecoveryActionType(action_type)
        except ValueError:
            raise ValidationError(f"Unknown action type: {action_type}")
        now = now or utcnow()

        action = RecoveryActionDB(
            id=str(uuid4()),
            recovery_case_id=case_id,
            action_type=action_type,
            note=note,
            created_at=now,
        )
        self.db.add(action)
        self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.id == case_id,
            RecoveryCaseDB.first_action_at.is_(None),
        ).update(
            {RecoveryCaseDB.first_action_at: now},
            synchronize_session=False,
        )
        self.db.flush()
        return action

    def add_operator_action(
        self,
        case_id: str,
        action_type: RecoveryActionType,
        note: Optional[str] = None,
        owner_account_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecoveryActionDB:
        """Operator-logged outreach or note. State transitions go through recover/expire."""
        case = self.get_case(case_id, owner_account_id)
        if action_type not in (RecoveryActionType.MESSAGE_SENT, RecoveryActionType.NOTE):
            raise ValidationError("Only message_sent and note actions can be logged directly")
        action = self.record_action(case.id, action_type, note=note, now=now)
        self.db.refresh(case)
        logger.info(f"Action logged: case={case.id} type={action_type.value}")
        return action

    # =========================================================================
    # READS
    # =========================================================================

    def get_case(self, case_id: str, owner_account_id: Optional[str] = None) -> RecoveryCaseDB:
        query = self.db.query(RecoveryCaseDB).filter(RecoveryCaseDB.id == case_id)
        if owner_account_id is not None:
            query = query.filter(RecoveryCaseDB.owner_account_id == owner_account_id)
        case = query.first()
        if not case:
            raise NotFound(f"Recovery case {case_id} not found")
        return case

    def find_open_case_for_invoice(self, owner_account_id: str, invoice_reference: str) -> Optional[RecoveryCaseDB]:
        return self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.owner_account_id == owner_account_id,
            RecoveryCaseDB.invoice_reference == invoice_reference,
            RecoveryCaseDB.status == RecoveryCaseStatus.OPEN,
        ).first()

    def find_latest_case_for_invoice(self, owner_account_id: str, invoice_reference: str) -> Optional[RecoveryCaseDB]:
        return self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.owner_account_id == owner_account_id,
            RecoveryCaseDB.invoice_reference == invoice_reference,
        ).order_by(RecoveryCaseDB.opened_at.desc()).first()

    def list_cases(
        self,
        owner_account_id: str,
        status: Optional[RecoveryCaseStatus] = None,
        now: Optional[datetime] = None,
    ) -> List[RecoveryCaseDB]:
        """Cases ordered by urgency, filtered by effective status."""
        now = now or utcnow()
        cases = self.db.query(RecoveryCaseDB).filter(
            RecoveryCaseDB.owner_account_id == owner_account_id
        ).all()
        if status is not None:
            cases = [c for c in cases if effective_status(c, now) == status]
        return rank(cases, now)

    def stats(self, owner_account_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        rows = self.db.query(
            RecoveryCaseDB.status, RecoveryCaseDB.deadline_at
        ).filter(RecoveryCaseDB.owner_account_id == owner_account_id).all()

        counts = {status.value: 0 for status in RecoveryCaseStatus}
        for row in rows:
            counts[effective_status(row, now).value] += 1
        counts["total"] = len(rows)
        return counts

    def describe(self, case: RecoveryCaseDB, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Operator view of one case."""
        now = now or utcnow()
        status = effective_status(case, now)
        return {
            "id": case.id,
            "owner_account_id": case.owner_account_id,
            "customer_reference": case.customer_reference,
            "invoice_reference": case.invoice_reference,
            "amount_at_risk": case.amount_at_risk,
            "currency": case.currency,
            "churn_reason": case.churn_reason.value,
            "reason_label": get_reason_label(case.churn_reason),
            "recommendation": get_recommendation(case.churn_reason),
            "status": status.value,
            "stored_status": case.status.value,
            "opened_at": case.opened_at,
            "deadline_at": case.deadline_at,
            "hours_remaining": max(0.0, hours_remaining(case, now)) if status == RecoveryCaseStatus.OPEN else 0.0,
            "is_high_risk": is_high_risk(case, now),
            "first_action_at": case.first_action_at,
            "resolved_at": case.resolved_at,
        }

"""
Attribution Ledger

Append-only record crediting recovered revenue to a case, exactly once.

Core rules:
1. One entry per (recovery_case_id, source_event_id), source_event_id unique.
   Enforced by unique constraints, never by read-then-write.
2. A second record() with the same pair returns created=False and changes
   nothing. Callers must treat that as success. A source event already
   credited to a different case raises InvalidTransition.
3. Entries exist only for cases whose status is RECOVERED.
4. Entries are never updated or deleted. Corrections are out of scope.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import uuid4
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import InvalidTransition, NotFound, ValidationError
from ...models.db_models import LedgerEntryDB, RecoveryCaseDB, RecoveryCaseStatus, utcnow


logger = logging.getLogger(__name__)


@dataclass
class LedgerRecordResult:
    created: bool
    entry: Optional[LedgerEntryDB]


def normalize_amount(amount) -> Decimal:
    """Non-negative amount with two decimal places."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite() or value < 0:
        raise ValidationError("Amount must be a non-negative number")
    return value.quantize(Decimal("0.01"))


def normalize_currency(currency: Optional[str]) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {currency}")
    return code


class AttributionLedger:
    """
    Usage:
        ledger = AttributionLedger(db)
        result = ledger.record(case_id, "evt_123", Decimal("49.00"), "USD", "in_123")
        if not result.created: ...   # already attributed, still success
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        case_id: str,
        source_event_id: str,
        amount,
        currency: str,
        invoice_reference: Optional[str] = None,
        recovered_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> LedgerRecordResult:
        """
        Append one ledger entry for a recovered case.

        Raises:
            ValidationError: missing source event id, negative amount, bad currency
            NotFound: unknown case
            InvalidTransition: the case is not RECOVERED
        """
        if not source_event_id:
            raise ValidationError("source_event_id is required")
        amount = normalize_amount(amount)
        currency = normalize_currency(currency)

        case = self.db.query(RecoveryCaseDB).filter(RecoveryCaseDB.id == case_id).first()
        if not case:
            raise NotFound(f"Recovery case {case_id} not found")
        if case.status != RecoveryCaseStatus.RECOVERED:
            raise InvalidTransition(
                f"Ledger entries require a recovered case; case {case_id} is {case.status.value}"
            )

        invoice_reference = invoice_reference or case.invoice_reference
        if not invoice_reference:
            raise ValidationError("invoice_reference is required")

        existing = self.get_by_source_event(source_event_id)
        if existing:
            return self._duplicate(existing, case_id, source_event_id)

        entry = LedgerEntryDB(
            id=str(uuid4()),
            recovery_case_id=case.id,
            owner_account_id=case.owner_account_id,
            invoice_reference=invoice_reference,
            amount_recovered=amount,
            currency=currency,
            source_event_id=source_event_id,
            recovered_at=recovered_at or case.resolved_at or utcnow(),
            notes=notes,
        )
        try:
            with self.db.begin_nested():
                self.db.add(entry)
                self.db.flush()
        except IntegrityError:
            # A concurrent writer inserted the same source event first
            existing = self.get_by_source_event(source_event_id)
            return self._duplicate(existing, case_id, source_event_id)

        logger.info(
            f"Ledger entry created: case={case_id} source_event={source_event_id} "
            f"amount={amount} {currency}"
        )
        return LedgerRecordResult(created=True, entry=entry)

    def _duplicate(self, existing, case_id: str, source_event_id: str) -> LedgerRecordResult:
        if existing is not None and existing.recovery_case_id != case_id:
            raise InvalidTransition(
                f"Source event {source_event_id} is already attributed to case {existing.recovery_case_id}"
            )
        logger.info(f"Ledger entry already exists: case={case_id} source_event={source_event_id}")
        return LedgerRecordResult(created=False, entry=existing)

    def get_by_source_event(self, source_event_id: str) -> Optional[LedgerEntryDB]:
        return self.db.query(LedgerEntryDB).filter(
            LedgerEntryDB.source_event_id == source_event_id
        ).first()

    def entries_for_case(self, case_id: str):
        return self.db.query(LedgerEntryDB).filter(
            LedgerEntryDB.recovery_case_id == case_id
        ).order_by(LedgerEntryDB.recovered_at).all()

    # =========================================================================
    # Read side
    # =========================================================================

    def summary(self, owner_account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Recovered revenue per currency, lifetime and current calendar month.

        Returns:
            {"currencies": {"USD": {"lifetime_total", "lifetime_count",
             "month_total", "month_count"}}, "last_recovered_at": datetime|None}
        """
        now = now or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        base = self.db.query(
            LedgerEntryDB.currency,
            func.coalesce(func.sum(LedgerEntryDB.amount_recovered), 0),
            func.count(LedgerEntryDB.id),
        ).filter(LedgerEntryDB.owner_account_id == owner_account_id)

        lifetime = base.group_by(LedgerEntryDB.currency).all()
        month = base.filter(LedgerEntryDB.recovered_at >= month_start).group_by(LedgerEntryDB.currency).all()
        month_by_currency = {currency: (total, count) for currency, total, count in month}

        currencies = {}
        for currency, total, count in lifetime:
            month_total, month_count = month_by_currency.get(currency, (0, 0))
            currencies[currency] = {
                "lifetime_total": normalize_amount(total),
                "lifetime_count": count,
                "month_total": normalize_amount(month_total),
                "month_count": month_count,
            }

        last_recovered_at = self.db.query(func.max(LedgerEntryDB.recovered_at)).filter(
            LedgerEntryDB.owner_account_id == owner_account_id
        ).scalar()

        return {
            "currencies": currencies,
            "last_recovered_at": last_recovered_at,
        }

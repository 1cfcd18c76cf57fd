"""
Billing Event Processor

Ingestion boundary for provider webhooks. Delivery is at-least-once,
possibly duplicated and out of order.

Processing rules:
1. Exactly-once: a ProcessedEvent marker keyed by event_id is inserted in
   the same nested transaction as the handling. A redelivery is answered
   from the marker (one primary-key lookup); a concurrent duplicate loses
   on the primary key and its changes roll back.
2. Every handler is itself idempotent on natural keys (invoice reference,
   source event id), so a replay after a partial failure is safe.
3. Risk scoring runs after case management, outside its transaction.
   A scoring failure is logged and never fails the event.
4. Subscription updates older than the stored snapshot are ignored.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set
from uuid import uuid4
import logging

from dateutil import parser as date_parser
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import EngineError, ValidationError
from ...models.db_models import (
    AccountDB, ProcessedEventDB, SubscriptionSnapshotDB,
    RecoveryCaseStatus, RiskEventType, SubscriptionStatus, utcnow,
)
from ..recovery.case_manager import RecoveryCaseManager
from ..recovery.churn_reasons import classify_failure
from ..risk.risk_scorer import RiskScorer, TRIAL_ENDING_WINDOW, RENEWAL_WINDOW, RENEWAL_SCORED_STATUSES
from ..risk.signal_store import RiskSignalStore


logger = logging.getLogger(__name__)


class BillingEventType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"


def parse_timestamp(value) -> Optional[datetime]:
    """Unix seconds, ISO-8601 string or datetime -> naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class BillingEvent(BaseModel):
    """Provider-neutral billing event."""
    event_id: str = Field(..., min_length=1, max_length=255)
    type: BillingEventType
    account_id: str = Field(..., min_length=1, max_length=36)
    occurred_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at", mode="before")
    @classmethod
    def normalize_occurred_at(cls, value):
        return parse_timestamp(value)


def derived_signals(snapshot, now: datetime) -> Set[RiskEventType]:
    """Risk signals implied by a subscription state."""
    if snapshot is None:
        return set()
    signals = set()
    if snapshot.status == SubscriptionStatus.PAST_DUE:
        signals.add(RiskEventType.PAST_DUE)
    elif snapshot.status == SubscriptionStatus.UNPAID:
        signals.add(RiskEventType.UNPAID)
    if snapshot.cancel_at_period_end:
        signals.add(RiskEventType.CANCEL_SCHEDULED)
    if snapshot.trial_end is not None and now < snapshot.trial_end <= now + TRIAL_ENDING_WINDOW:
        signals.add(RiskEventType.TRIAL_ENDING_SOON)
    if (
        snapshot.status in RENEWAL_SCORED_STATUSES
        and snapshot.current_period_end is not None
        and now < snapshot.current_period_end <= now + RENEWAL_WINDOW
    ):
        signals.add(RiskEventType.RENEWAL_DUE_SOON)
    return signals


class _SubscriptionState:
    """Plain copy of a snapshot's scoring fields, taken before it is updated."""

    def __init__(self, snapshot):
        self.status = snapshot.status
        self.cancel_at_period_end = snapshot.cancel_at_period_end
        self.trial_end = snapshot.trial_end
        self.current_period_end = snapshot.current_period_end


class BillingEventProcessor:
    """
    Usage:
        processor = BillingEventProcessor(db, notifier=notifier)
        result = processor.process(BillingEvent(...))
        db.commit()
    """

    def __init__(
        self,
        db: Session,
        case_manager: Optional[RecoveryCaseManager] = None,
        scorer: Optional[RiskScorer] = None,
        notifier=None,
    ):
        self.db = db
        self.signals = RiskSignalStore(db)
        self.cases = case_manager or RecoveryCaseManager(db, notifier=notifier)
        self.scorer = scorer or RiskScorer(db, self.signals)

    def process(self, event: BillingEvent, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()

        marker = self._get_marker(event.event_id)
        if marker:
            if (marker.outcome or {}).get("ledger_pending"):
                return self._retry_attribution(event, marker, now)
            logger.info(f"Duplicate billing event {event.event_id} ({event.type.value}), skipping")
            return {"event_id": event.event_id, "duplicate": True, "outcome": marker.outcome}

        account = self.db.query(AccountDB).filter(AccountDB.id == event.account_id).first()

        try:
            with self.db.begin_nested():
                marker = ProcessedEventDB(
                    event_id=event.event_id,
                    event_type=event.type.value,
                    account_id=event.account_id,
                    invoice_reference=event.data.get("invoice_id") or None,
                    occurred_at=event.occurred_at,
                )
                self.db.add(marker)
                self.db.flush()

                if account is None:
                    logger.warning(f"Billing event {event.event_id} for unknown account {event.account_id}")
                    outcome = {"status": "ignored", "reason": "unknown_account"}
                else:
                    outcome = self._dispatch(event, now)
                marker.outcome = outcome
                self.db.flush()
        except IntegrityError:
            existing = self._get_marker(event.event_id)
            if existing is None:
                raise
            logger.info(f"Billing event {event.event_id} processed concurrently, skipping")
            return {"event_id": event.event_id, "duplicate": True, "outcome": existing.outcome}

        result = {"event_id": event.event_id, "duplicate": False, "outcome": outcome}
        if outcome.get("rescore"):
            result["risk_score"] = self._rescore(event.account_id, now)
        return result

    def _retry_attribution(self, event: BillingEvent, marker: ProcessedEventDB, now: datetime) -> Dict[str, Any]:
        """Redelivered payment whose ledger write failed: attribute it now."""
        with self.db.begin_nested():
            outcome = self._handle_invoice_paid(event, now)
            marker.outcome = outcome
            self.db.flush()
        logger.info(
            f"Redelivered billing event {event.event_id} retried attribution: "
            f"ledger_created={outcome.get('ledger_created')}"
        )
        return {"event_id": event.event_id, "duplicate": True, "outcome": outcome}

    def _get_marker(self, event_id: str) -> Optional[ProcessedEventDB]:
        return self.db.query(ProcessedEventDB).filter(ProcessedEventDB.event_id == event_id).first()

    def _latest_payment(self, account_id: str, invoice_reference: str) -> Optional[ProcessedEventDB]:
        return self.db.query(ProcessedEventDB).filter(
            ProcessedEventDB.account_id == account_id,
            ProcessedEventDB.invoice_reference == invoice_reference,
            ProcessedEventDB.event_type == BillingEventType.INVOICE_PAID.value,
            ProcessedEventDB.occurred_at.isnot(None),
        ).order_by(ProcessedEventDB.occurred_at.desc()).first()

    def _dispatch(self, event: BillingEvent, now: datetime) -> Dict[str, Any]:
        if event.type == BillingEventType.PAYMENT_FAILED:
            return self._handle_payment_failed(event, now)
        elif event.type == BillingEventType.INVOICE_PAID:
            return self._handle_invoice_paid(event, now)
        elif event.type in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED):
            return self._handle_subscription_change(event, now)
        else:
            raise ValueError(f"Unhandled billing event type: {event.type}")

    def _rescore(self, account_id: str, now: datetime) -> Optional[int]:
        try:
            return self.scorer.score(account_id, now).score
        except EngineError as e:
            logger.error(f"Risk rescore failed for account {account_id}: {e.message}")
            return None

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _handle_payment_failed(self, event: BillingEvent, now: datetime) -> Dict[str, Any]:
        data = event.data
        invoice_reference = data.get("invoice_id")
        customer_reference = data.get("customer_id")
        if not invoice_reference or not customer_reference:
            raise ValidationError("payment_failed requires invoice_id and customer_id")

        self.signals.append(
            event.account_id,
            RiskEventType.PAYMENT_FAILED,
            occurred_at=event.occurred_at,
            source_event_id=event.event_id,
        )

        reason = classify_failure(data.get("decline_code"), retry_scheduled=data.get("retry_scheduled", True))

        payment = self._latest_payment(event.account_id, invoice_reference)
        if payment is not None and payment.occurred_at >= event.occurred_at:
            return self._failure_after_payment(event, payment, reason, now)

        opened = self._open_case(event, reason, now)

        # Reflect the failure on the stored subscription unless a newer update already landed
        self.db.query(SubscriptionSnapshotDB).filter(
            SubscriptionSnapshotDB.account_id == event.account_id,
            SubscriptionSnapshotDB.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING]),
            SubscriptionSnapshotDB.source_updated_at <= event.occurred_at,
        ).update(
            {
                SubscriptionSnapshotDB.status: SubscriptionStatus.PAST_DUE,
                SubscriptionSnapshotDB.source_updated_at: event.occurred_at,
                SubscriptionSnapshotDB.updated_at: now,
            },
            synchronize_session=False,
        )

        logger.info(
            f"Payment failed processed: event={event.event_id} invoice={invoice_reference} "
            f"case={opened.case.id} created={opened.created} reason={reason.value}"
        )
        return {
            "status": "case_opened" if opened.created else "case_exists",
            "case_id": opened.case.id,
            "churn_reason": reason.value,
            "rescore": True,
        }

    def _open_case(self, event: BillingEvent, reason, now: datetime):
        data = event.data
        return self.cases.open_case(
            owner_account_id=event.account_id,
            customer_reference=data.get("customer_id"),
            amount_at_risk=data.get("amount_due", 0),
            currency=data.get("currency", "USD"),
            invoice_reference=data.get("invoice_id"),
            churn_reason=reason,
            opened_at=now,
            source_event_id=event.event_id,
        )

    def _failure_after_payment(self, event: BillingEvent, payment: ProcessedEventDB, reason, now: datetime) -> Dict[str, Any]:
        """
        A failure delivered after the payment that settled the invoice.

        If the payment found no case to credit, the case is opened and
        recovered by that payment now. Otherwise the invoice is already
        settled and no case is opened.
        """
        invoice_reference = event.data.get("invoice_id")
        payment_outcome = payment.outcome or {}
        if payment_outcome.get("status") != "no_case":
            logger.info(
                f"Late payment failure {event.event_id} for invoice {invoice_reference} "
                f"already settled by {payment.event_id}, no case opened"
            )
            return {
                "status": "already_paid",
                "paid_event_id": payment.event_id,
                "churn_reason": reason.value,
                "rescore": True,
            }

        opened = self._open_case(event, reason, now)
        result = self.cases.recover(
            opened.case.id,
            source_event_id=payment.event_id,
            amount_recovered=payment_outcome.get("amount_paid"),
            now=now,
        )
        payment.outcome = self._payment_outcome(opened.case.id, result)
        logger.info(
            f"Late payment failure {event.event_id} for invoice {invoice_reference}: case {opened.case.id} "
            f"recovered by earlier payment {payment.event_id} ledger_created={result.ledger_created}"
        )
        return {
            "status": "recovered_by_earlier_payment",
            "case_id": opened.case.id,
            "paid_event_id": payment.event_id,
            "churn_reason": reason.value,
            "ledger_created": result.ledger_created,
            "rescore": True,
        }

    def _handle_invoice_paid(self, event: BillingEvent, now: datetime) -> Dict[str, Any]:
        invoice_reference = event.data.get("invoice_id")
        if not invoice_reference:
            raise ValidationError("invoice_paid requires invoice_id")
        amount_paid = event.data.get("amount_paid")

        case = self.cases.find_open_case_for_invoice(event.account_id, invoice_reference)
        if case is None:
            case = self.cases.find_latest_case_for_invoice(event.account_id, invoice_reference)
        if case is None:
            # Kept on the marker so a failure delivered late can still be credited
            logger.info(f"Invoice {invoice_reference} paid with no recovery case, nothing to attribute yet")
            return {
                "status": "no_case",
                "amount_paid": str(amount_paid) if amount_paid is not None else None,
            }

        result = self.cases.recover(
            case.id,
            source_event_id=event.event_id,
            amount_recovered=amount_paid,
            now=now,
        )
        logger.info(
            f"Invoice paid processed: event={event.event_id} invoice={invoice_reference} "
            f"case={case.id} outcome={result.outcome.value} ledger_created={result.ledger_created}"
        )
        return self._payment_outcome(case.id, result)

    def _payment_outcome(self, case_id: str, result) -> Dict[str, Any]:
        # ledger_pending: recovered but not yet credited, a redelivery retries the ledger write
        pending = (
            result.case.status == RecoveryCaseStatus.RECOVERED
            and not self.cases.ledger.entries_for_case(case_id)
        )
        return {
            "status": result.outcome.value,
            "case_id": case_id,
            "ledger_created": result.ledger_created,
            "ledger_pending": pending,
        }

    def _handle_subscription_change(self, event: BillingEvent, now: datetime) -> Dict[str, Any]:
        data = event.data
        if event.type == BillingEventType.SUBSCRIPTION_DELETED:
            status = SubscriptionStatus.CANCELED
        else:
            try:
                status = SubscriptionStatus(data.get("status"))
            except ValueError:
                raise ValidationError(f"Unknown subscription status: {data.get('status')}")

        values = {
            "provider_subscription_id": data.get("subscription_id"),
            "status": status,
            "cancel_at_period_end": bool(data.get("cancel_at_period_end", False)),
            "current_period_end": parse_timestamp(data.get("current_period_end")),
            "trial_end": parse_timestamp(data.get("trial_end")),
        }

        snapshot = self.db.query(SubscriptionSnapshotDB).filter(
            SubscriptionSnapshotDB.account_id == event.account_id
        ).first()

        if snapshot is None:
            previous = set()
            snapshot = SubscriptionSnapshotDB(
                id=str(uuid4()),
                account_id=event.account_id,
                source_updated_at=event.occurred_at,
                updated_at=now,
                **values,
            )
            self.db.add(snapshot)
            self.db.flush()
        else:
            if event.occurred_at < snapshot.source_updated_at:
                logger.info(
                    f"Stale subscription update {event.event_id} ignored for account {event.account_id}: "
                    f"{event.occurred_at.isoformat()} < {snapshot.source_updated_at.isoformat()}"
                )
                return {"status": "stale", "rescore": False}
            previous = derived_signals(_SubscriptionState(snapshot), now)
            for key, value in values.items():
                setattr(snapshot, key, value)
            snapshot.source_updated_at = event.occurred_at
            snapshot.updated_at = now
            self.db.flush()

        appended = []
        for signal_type in sorted(derived_signals(snapshot, now) - previous, key=lambda s: s.value):
            self.signals.append(
                event.account_id,
                signal_type,
                occurred_at=event.occurred_at,
                source_event_id=event.event_id,
            )
            appended.append(signal_type.value)

        logger.info(
            f"Subscription snapshot updated: account={event.account_id} status={status.value} "
            f"signals={appended}"
        )
        return {"status": "snapshot_updated", "signals": appended, "rescore": True}

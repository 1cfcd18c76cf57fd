"""
Payment Recovery API Routes

Operator endpoints for the account's recovery cases: ranked list, stats,
case detail, manual creation, action logging, manual expiry and the
recovered-revenue summary. All reads use effective status, so a case past
its deadline reads as expired even before the sweep materializes it.
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_account
from ..database import get_db
from ..models.db_models import ChurnReason, RecoveryActionType, RecoveryCaseStatus, utcnow
from ..services.recovery import AttributionLedger, RecoveryCaseManager


router = APIRouter(prefix="/recovery", tags=["recovery"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateCaseRequest(BaseModel):
    """Manually open a recovery case."""
    customer_reference: str = Field(..., min_length=1, max_length=255)
    amount_at_risk: Decimal = Field(..., ge=0, description="Amount that would be lost")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    invoice_reference: Optional[str] = Field(None, max_length=255)
    churn_reason: ChurnReason = Field(default=ChurnReason.UNKNOWN_FAILURE)


class LogActionRequest(BaseModel):
    action_type: RecoveryActionType = Field(..., description="message_sent | note")
    note: Optional[str] = Field(None, max_length=2000)


class ExpireCaseRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)


def _action_view(action) -> dict:
    return {
        "id": action.id,
        "action_type": action.action_type.value,
        "note": action.note,
        "created_at": action.created_at,
    }


def _ledger_view(entry) -> dict:
    return {
        "id": entry.id,
        "invoice_reference": entry.invoice_reference,
        "amount_recovered": entry.amount_recovered,
        "currency": entry.currency,
        "source_event_id": entry.source_event_id,
        "recovered_at": entry.recovered_at,
        "notes": entry.notes,
    }


# =============================================================================
# CASE ENDPOINTS
# =============================================================================

@router.get("/cases", response_model=dict)
async def list_cases(
    status: Optional[RecoveryCaseStatus] = Query(None, description="Filter by effective status"),
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Cases ranked by urgency: open cases first, highest revenue per remaining hour on top."""
    manager = RecoveryCaseManager(db)
    now = utcnow()
    cases = manager.list_cases(current_account.id, status=status, now=now)
    return {
        "count": len(cases),
        "cases": [manager.describe(case, now) for case in cases],
    }


@router.get("/cases/stats", response_model=dict)
async def case_stats(
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    return RecoveryCaseManager(db).stats(current_account.id)


@router.post("/cases", response_model=dict)
async def create_case(
    request: CreateCaseRequest,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Open a case by hand (no invoice reference required)."""
    manager = RecoveryCaseManager(db)
    result = manager.open_case(
        owner_account_id=current_account.id,
        customer_reference=request.customer_reference,
        amount_at_risk=request.amount_at_risk,
        currency=request.currency,
        invoice_reference=request.invoice_reference,
        churn_reason=request.churn_reason,
    )
    db.commit()
    return {"created": result.created, "case": manager.describe(result.case)}


@router.get("/cases/{case_id}", response_model=dict)
async def get_case(
    case_id: str,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    manager = RecoveryCaseManager(db)
    case = manager.get_case(case_id, current_account.id)
    detail = manager.describe(case)
    detail["actions"] = [_action_view(a) for a in case.actions]
    detail["ledger_entries"] = [_ledger_view(e) for e in manager.ledger.entries_for_case(case.id)]
    return detail


@router.post("/cases/{case_id}/actions", response_model=dict)
async def log_action(
    case_id: str,
    request: LogActionRequest,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Log outreach or a note. The first action stamps first_action_at."""
    manager = RecoveryCaseManager(db)
    action = manager.add_operator_action(
        case_id, request.action_type, note=request.note, owner_account_id=current_account.id
    )
    db.commit()
    return _action_view(action)


@router.post("/cases/{case_id}/expire", response_model=dict)
async def expire_case(
    case_id: str,
    request: ExpireCaseRequest,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Give up on an open case. Already-resolved cases report already_resolved."""
    manager = RecoveryCaseManager(db)
    result = manager.expire(case_id, owner_account_id=current_account.id, note=request.note)
    db.commit()
    return {"outcome": result.outcome.value, "case": manager.describe(result.case)}


# =============================================================================
# REVENUE
# =============================================================================

@router.get("/revenue/summary", response_model=dict)
async def revenue_summary(
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Recovered revenue per currency, lifetime and this calendar month."""
    return AttributionLedger(db).summary(current_account.id)

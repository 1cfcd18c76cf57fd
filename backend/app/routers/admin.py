"""
ChurnShield Recovery Engine - Admin Router
QA boundary for driving recovery cases by hand.
Subject to the same idempotency guarantees as the webhook path.
"""
from decimal import Decimal
from typing import Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..database import get_db
from ..dependencies import get_notifier
from ..services.recovery import RecoveryCaseManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


SIMULATED_RECOVERY_NOTE = "Simulated recovery attribution (manual test)"


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SimulateRecoveryRequest(BaseModel):
    """Drive an open case to recovered as if its invoice had been paid."""
    case_id: str = Field(..., description="Recovery case to recover")
    amount_recovered: Optional[Decimal] = Field(None, ge=0, description="Defaults to amount at risk")
    notes: Optional[str] = Field(None, max_length=2000)


class SimulateRecoveryResponse(BaseModel):
    outcome: str  # recovered | already_resolved
    case_id: str
    case_status: str
    ledger_created: bool
    source_event_id: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/simulate-recovery", response_model=SimulateRecoveryResponse)
async def simulate_recovery(
    request: SimulateRecoveryRequest,
    db: Session = Depends(get_db),
    admin = Depends(require_admin),
    notifier = Depends(get_notifier),
):
    """
    Mark an open case recovered and write its ledger entry.

    Repeating the call on a resolved case returns already_resolved and
    writes nothing.
    """
    manager = RecoveryCaseManager(db, notifier=notifier)
    result = manager.recover(
        request.case_id,
        amount_recovered=request.amount_recovered,
        notes=request.notes or SIMULATED_RECOVERY_NOTE,
        source_prefix="sim",
    )
    db.commit()

    logger.info(
        f"Admin {admin.email} simulated recovery: case={request.case_id} "
        f"outcome={result.outcome.value} ledger_created={result.ledger_created}"
    )
    return SimulateRecoveryResponse(
        outcome=result.outcome.value,
        case_id=result.case.id,
        case_status=result.case.status.value,
        ledger_created=result.ledger_created,
        source_event_id=result.source_event_id,
    )

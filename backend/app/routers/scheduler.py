"""
Scheduler API Routes

Internal endpoints for cron-triggered system tasks:
batch risk recompute (rate limited), recovery case expiry sweep and
automated recovery notices.
"""
import hmac
import os

from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_notifier, get_recompute_limiter
from ..services.recovery import DunningScheduler, ExpirySweeper
from ..services.risk import RiskRecomputeJob


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if not hmac.compare_digest(x_internal_key, INTERNAL_API_KEY):
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/recompute-risk", response_model=dict)
async def recompute_risk(
    db: Session = Depends(get_db),
    limiter = Depends(get_recompute_limiter),
    _: bool = Depends(verify_internal_key),
):
    """
    Re-score every at-risk account.

    Globally rate limited; a rejected run returns 429 with Retry-After.
    """
    job = RiskRecomputeJob(db, limiter)
    return job.run()


@router.post("/expire-cases", response_model=dict)
async def expire_cases(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Materialize expiry for open cases past their deadline.

    System-automatic - no operator confirmation required.
    """
    sweeper = ExpirySweeper(db)
    return sweeper.run()


@router.post("/send-recovery-notices", response_model=dict)
async def send_recovery_notices(
    db: Session = Depends(get_db),
    notifier = Depends(get_notifier),
    _: bool = Depends(verify_internal_key),
):
    """
    Send the first notice, or the single follow-up, for each open case.

    Notifier failures are logged and recorded on the case; the run succeeds.
    """
    scheduler = DunningScheduler(db, notifier=notifier)
    return scheduler.run()

"""
Churn Risk API Routes

The account's current risk snapshot and an on-demand rescore.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_account
from ..database import get_db
from ..errors import NotFound
from ..services.risk import RiskScorer


router = APIRouter(prefix="/risk", tags=["risk"])


@router.get("/snapshot", response_model=dict)
async def get_snapshot(
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    snapshot = RiskScorer(db).get_snapshot(current_account.id)
    if snapshot is None:
        raise NotFound("No risk snapshot for this account yet")
    return {
        "account_id": snapshot.account_id,
        "score": snapshot.score,
        "reasons": snapshot.top_reasons,
        "updated_at": snapshot.updated_at,
    }


@router.post("/score", response_model=dict)
async def rescore(
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Recompute and store the account's score now."""
    result = RiskScorer(db).score(current_account.id)
    db.commit()
    return result.to_dict()

"""
Offer Config API Routes

Read and publish the account's cancel-flow configuration. Each publish is a
new immutable version; running sessions keep the version they started with.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_account
from ..database import get_db
from ..services.cancel_flow import CancelFlowConfig, OfferConfigStore


router = APIRouter(prefix="/offer-config", tags=["offer-config"])


@router.get("", response_model=CancelFlowConfig)
async def get_offer_config(
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Latest published configuration (version 0 means defaults, not yet published)."""
    config = OfferConfigStore(db).latest(current_account.id)
    return config or CancelFlowConfig()


@router.put("", response_model=CancelFlowConfig)
async def publish_offer_config(
    request: CancelFlowConfig,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """Publish a new configuration version. The body's version field is ignored."""
    config = OfferConfigStore(db).publish(current_account.id, request)
    db.commit()
    return config

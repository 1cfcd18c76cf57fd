"""
Billing Webhook Routes

Receives provider-neutral billing events. Redelivery is always safe: a
duplicate event id is acknowledged with duplicate=true and changes nothing.
"""
import hmac
import os

from fastapi import APIRouter, Depends, HTTPException, Header
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_notifier
from ..services.webhooks import BillingEvent, BillingEventProcessor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET", "billing-webhook-secret-change-in-production")


async def verify_webhook_secret(x_webhook_secret: str = Header(...)):
    """Verify the shared secret configured at the billing provider."""
    if not hmac.compare_digest(x_webhook_secret, BILLING_WEBHOOK_SECRET):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    return True


@router.post("/billing", response_model=dict)
async def receive_billing_event(
    event: BillingEvent,
    db: Session = Depends(get_db),
    notifier = Depends(get_notifier),
    _: bool = Depends(verify_webhook_secret),
):
    """
    Process one billing event.

    Errors roll back the event's changes and return a non-2xx status so the
    provider redelivers.
    """
    processor = BillingEventProcessor(db, notifier=notifier)
    result = processor.process(event)
    db.commit()
    return result

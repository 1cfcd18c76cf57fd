"""
Cancel Session API Routes

Customer-facing widget endpoints, addressed by the opaque link token, plus
the authenticated endpoint that mints cancel links for an account.

Widget responses never carry internal error codes; failures map to the
generic messages the widget's error screen shows.
"""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_account
from ..database import get_db
from ..dependencies import client_ip, get_notifier, get_offer_applier, get_widget_limiter
from ..errors import EngineError, NotFound, RateLimited, ValidationError
from ..models.db_models import CompletionAction
from ..services.cancel_flow import CancelSessionEngine, OfferConfigStore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cancel-session", tags=["cancel-session"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateCancelLinkRequest(BaseModel):
    """Request to mint a cancel link for one customer."""
    customer_id: Optional[str] = Field(None, max_length=255, description="Provider customer reference")
    subscription_id: Optional[str] = Field(None, max_length=255, description="Provider subscription reference")


class SurveyRequest(BaseModel):
    exit_reason: Optional[str] = Field(None, description="Configured reason or 'other: <text>'")
    custom_feedback: Optional[str] = Field(None, description="Free-text feedback")


class OfferResponseRequest(BaseModel):
    accepted: bool


class CompleteRequest(BaseModel):
    action: CompletionAction = Field(default=CompletionAction.CANCELLED, description="cancelled | abandoned")


# =============================================================================
# HELPERS
# =============================================================================

GENERIC_ERROR = "Something went wrong. Please try again."


def _widget_error(error: EngineError) -> JSONResponse:
    """Customer-safe rendering of an engine error."""
    if isinstance(error, RateLimited):
        headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later."},
            headers=headers,
        )
    if isinstance(error, NotFound):
        return JSONResponse(status_code=404, content={"error": "Session not found or expired"})
    if isinstance(error, ValidationError):
        return JSONResponse(status_code=400, content={"error": error.message})
    logger.error(f"Cancel widget request failed: {error.code} {error.message}")
    return JSONResponse(status_code=503, content={"error": GENERIC_ERROR})


def _check_rate_limit(request: Request, limiter) -> None:
    ip = client_ip(request)
    decision = limiter.hit(ip)
    if not decision.allowed:
        logger.warning(f"Widget rate limit exceeded for {ip}")
        raise RateLimited(retry_after=decision.retry_after)


def _engine(db: Session, applier, notifier) -> CancelSessionEngine:
    return CancelSessionEngine(db, offer_applier=applier, notifier=notifier)


# =============================================================================
# ACCOUNT ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
async def create_cancel_link(
    request: CreateCancelLinkRequest,
    db: Session = Depends(get_db),
    current_account = Depends(get_current_account),
):
    """
    Mint a signed, expiring cancel link.

    Publishes the default cancel-flow configuration the first time an
    account mints a link.
    """
    OfferConfigStore(db).ensure_default(current_account.id)
    db.commit()

    engine = CancelSessionEngine(db)
    return engine.mint_link(
        current_account.id,
        customer_reference=request.customer_id,
        subscription_reference=request.subscription_id,
    )


# =============================================================================
# WIDGET ENDPOINTS (PUBLIC, TOKEN-ADDRESSED)
# =============================================================================

@router.get("/{token}")
async def get_session(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    limiter = Depends(get_widget_limiter),
    applier = Depends(get_offer_applier),
    notifier = Depends(get_notifier),
):
    """Current config and session state; creates the session on first load."""
    try:
        _check_rate_limit(request, limiter)
        view = _engine(db, applier, notifier).get_or_create(token)
        db.commit()
    except EngineError as e:
        db.rollback()
        return _widget_error(e)
    return view.to_dict()


@router.post("/{token}/survey")
async def submit_survey(
    token: str,
    body: SurveyRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter = Depends(get_widget_limiter),
    applier = Depends(get_offer_applier),
    notifier = Depends(get_notifier),
):
    """Record the exit reason; returns the offer or the final status."""
    try:
        _check_rate_limit(request, limiter)
        view = _engine(db, applier, notifier).submit_survey(token, body.exit_reason, body.custom_feedback)
        db.commit()
    except EngineError as e:
        db.rollback()
        return _widget_error(e)
    return view.to_dict()


@router.post("/{token}/offer")
async def respond_to_offer(
    token: str,
    body: OfferResponseRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter = Depends(get_widget_limiter),
    applier = Depends(get_offer_applier),
    notifier = Depends(get_notifier),
):
    """Accept or decline the presented offer."""
    try:
        _check_rate_limit(request, limiter)
        view = _engine(db, applier, notifier).respond_to_offer(token, body.accepted)
        db.commit()
    except EngineError as e:
        db.rollback()
        return _widget_error(e)
    return view.to_dict()


@router.post("/{token}/complete")
async def complete_session(
    token: str,
    body: CompleteRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter = Depends(get_widget_limiter),
    applier = Depends(get_offer_applier),
    notifier = Depends(get_notifier),
):
    """Finalize the session (cancelled or abandoned)."""
    try:
        _check_rate_limit(request, limiter)
        view = _engine(db, applier, notifier).complete(token, body.action)
        db.commit()
    except EngineError as e:
        db.rollback()
        return _widget_error(e)
    return view.to_dict()

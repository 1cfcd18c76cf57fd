"""
Cancel Session Engine

Token-addressed, resumable state machine behind the cancellation widget.

    SURVEY_PENDING -> SURVEY_COMPLETED -> OFFER_PRESENTED -> SAVED
                                       |                 -> CANCELLED
                                       -> CANCELLED  (resolved offer is NONE)
    any non-terminal --complete--> CANCELLED

Core rules:
1. The link token is the capability. Rows are keyed by its SHA-256; the raw
   token is never stored or logged.
2. The first fetch of a valid, unseen token creates the session and pins
   the account's current offer-config version.
3. Status only moves forward. Every transition is a compare-and-swap on the
   stored status; a request that arrives in the wrong state returns the
   current view with transitioned=False instead of an error.
4. Re-fetching a token rebuilds the step from stored status and
   offer_type_presented, so a reload never re-prompts the survey.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import uuid4
import hashlib
import logging
import os
import secrets

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import ALGORITHM, SECRET_KEY
from ...errors import NotFound, ValidationError
from ...models.db_models import (
    CancelSessionDB, SavedCustomerDB, CancelSessionStatus, CompletionAction, OfferType, utcnow,
)
from ..collaborators import notify_safely
from .offer_config import CancelFlowConfig, OfferConfigStore, OTHER_REASON
from .offer_resolver import Offer, build_offer, reason_key, resolve_offer_type


logger = logging.getLogger(__name__)


CANCEL_LINK_TTL_HOURS = int(os.getenv("CANCEL_LINK_TTL_HOURS", "72"))
APP_URL = os.getenv("APP_URL", "http://localhost:5173")
LINK_PURPOSE = "cancel_session"

MAX_REASON_LENGTH = 255
MAX_FEEDBACK_LENGTH = 2000


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

# (current status, action) -> next status
SESSION_TRANSITIONS = {
    (CancelSessionStatus.SURVEY_PENDING, "submit_survey"): CancelSessionStatus.SURVEY_COMPLETED,
    (CancelSessionStatus.SURVEY_COMPLETED, "present_offer"): CancelSessionStatus.OFFER_PRESENTED,
    (CancelSessionStatus.SURVEY_COMPLETED, "skip_offer"): CancelSessionStatus.CANCELLED,
    (CancelSessionStatus.OFFER_PRESENTED, "accept_offer"): CancelSessionStatus.SAVED,
    (CancelSessionStatus.OFFER_PRESENTED, "decline_offer"): CancelSessionStatus.CANCELLED,
    (CancelSessionStatus.SURVEY_PENDING, "complete"): CancelSessionStatus.CANCELLED,
    (CancelSessionStatus.SURVEY_COMPLETED, "complete"): CancelSessionStatus.CANCELLED,
    (CancelSessionStatus.OFFER_PRESENTED, "complete"): CancelSessionStatus.CANCELLED,
}

TERMINAL_STATUSES = {CancelSessionStatus.SAVED, CancelSessionStatus.CANCELLED}

# Widget step shown for each stored status
STEP_FOR_STATUS = {
    CancelSessionStatus.SURVEY_PENDING: "survey",
    CancelSessionStatus.SURVEY_COMPLETED: "survey",
    CancelSessionStatus.OFFER_PRESENTED: "offer",
    CancelSessionStatus.SAVED: "complete",
    CancelSessionStatus.CANCELLED: "complete",
}

if set(STEP_FOR_STATUS) != set(CancelSessionStatus):
    raise RuntimeError("every session status needs a widget step")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def next_status(current: CancelSessionStatus, action: str) -> Optional[CancelSessionStatus]:
    return SESSION_TRANSITIONS.get((current, action))


@dataclass
class SessionView:
    """Everything the widget needs to render the current step."""
    session: CancelSessionDB
    config: CancelFlowConfig
    offer: Optional[Offer] = None
    transitioned: bool = True

    @property
    def step(self) -> str:
        return STEP_FOR_STATUS[self.session.status]

    def to_dict(self) -> Dict[str, Any]:
        session = self.session
        return {
            "session": {
                "status": session.status.value,
                "step": self.step,
                "exit_reason": session.exit_reason,
                "offer_type_presented": session.offer_type_presented.value if session.offer_type_presented else None,
                "offer_accepted": session.offer_accepted,
                "completion_action": session.completion_action.value if session.completion_action else None,
            },
            "config": self.config.public_view(),
            "offer": self.offer.to_dict() if self.offer else None,
            "transitioned": self.transitioned,
        }


class CancelSessionEngine:
    """
    Usage:
        engine = CancelSessionEngine(db, offer_applier=applier, notifier=notifier)
        link = engine.mint_link(account_id, customer_reference="cus_1")
        view = engine.get_or_create(link["session_token"])
        view = engine.submit_survey(link["session_token"], "too_expensive")
        view = engine.respond_to_offer(link["session_token"], accepted=True)
        db.commit()
    """

    def __init__(
        self,
        db: Session,
        config_store: Optional[OfferConfigStore] = None,
        offer_applier=None,
        notifier=None,
        secret_key: str = SECRET_KEY,
    ):
        self.db = db
        self.configs = config_store or OfferConfigStore(db)
        self.offer_applier = offer_applier
        self.notifier = notifier
        self.secret_key = secret_key

    # =========================================================================
    # LINK TOKENS
    # =========================================================================

    def mint_link(
        self,
        account_id: str,
        customer_reference: Optional[str] = None,
        subscription_reference: Optional[str] = None,
        ttl_hours: int = CANCEL_LINK_TTL_HOURS,
    ) -> Dict[str, Any]:
        """
        Mint a signed, expiring cancel link. No row is written; the first
        fetch of the token creates the session.
        """
        expires_at = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
        claims = {
            "purpose": LINK_PURPOSE,
            "acct": account_id,
            "cus": customer_reference,
            "subscription": subscription_reference,
            "jti": secrets.token_hex(16),
            "exp": expires_at,
        }
        token = jwt.encode(claims, self.secret_key, algorithm=ALGORITHM)
        logger.info(f"Cancel link minted: account={account_id} session={hash_token(token)[:12]}")
        return {
            "session_token": token,
            "cancel_url": f"{APP_URL}/cancel/{token}",
            "expires_at": expires_at.replace(tzinfo=None),
        }

    def _decode_link(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except JWTError:
            raise NotFound("Session not found or expired")
        if claims.get("purpose") != LINK_PURPOSE or not claims.get("acct"):
            raise NotFound("Session not found or expired")
        return claims

    # =========================================================================
    # FETCH / RESUME
    # =========================================================================

    def get_or_create(self, token: str, now: Optional[datetime] = None) -> SessionView:
        """
        Current view for a token, creating the session on first fetch.

        An existing session resumes even after its link has expired.

        Raises:
            NotFound: invalid/expired link for an unseen token, or the
                account has no active cancel-flow configuration
        """
        now = now or utcnow()
        session_id = hash_token(token)
        session = self._get_session(session_id)

        if session is None:
            claims = self._decode_link(token)
            config = self.configs.latest(claims["acct"])
            if config is None or not config.is_active:
                raise NotFound("Cancel flow not configured")
            session = self._create_session(session_id, claims, config, now)
        else:
            config = self._pinned_config(session)

        transitioned = False
        if session.status == CancelSessionStatus.SURVEY_COMPLETED:
            # Interrupted between recording the survey and presenting the offer
            transitioned = self._advance_after_survey(session, config, now)

        return self._view(session, config, transitioned=transitioned)

    def _create_session(self, session_id: str, claims: Dict[str, Any], config: CancelFlowConfig, now: datetime) -> CancelSessionDB:
        session = CancelSessionDB(
            id=session_id,
            account_id=claims["acct"],
            customer_reference=claims.get("cus"),
            subscription_reference=claims.get("subscription"),
            config_version=config.version,
            status=CancelSessionStatus.SURVEY_PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(session)
                self.db.flush()
        except IntegrityError:
            # Concurrent first fetch of the same token
            existing = self._get_session(session_id)
            if existing is None:
                raise
            return existing

        logger.info(
            f"Cancel session created: session={session_id[:12]} account={claims['acct']} "
            f"config_version={config.version}"
        )
        return session

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def submit_survey(
        self,
        token: str,
        exit_reason: str,
        custom_feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SessionView:
        """
        Record the exit reason and move to the offer step, or straight to
        CANCELLED when the resolved offer is NONE.

        Raises:
            NotFound: unknown token
            ValidationError: missing or unconfigured exit reason
        """
        now = now or utcnow()
        session, config = self._load(token)
        exit_reason = self._validate_reason(config, exit_reason)
        if custom_feedback is not None:
            custom_feedback = custom_feedback.strip()[:MAX_FEEDBACK_LENGTH] or None

        if session.status != CancelSessionStatus.SURVEY_PENDING:
            logger.info(f"Survey ignored for session {session.id[:12]} in status {session.status.value}")
            return self._view(session, config, transitioned=False)

        offer_type = resolve_offer_type(config.offer_settings, exit_reason)
        updated = self._compare_and_swap(
            session,
            "submit_survey",
            {
                CancelSessionDB.exit_reason: exit_reason,
                CancelSessionDB.custom_feedback: custom_feedback,
                CancelSessionDB.offer_type_presented: offer_type,
            },
            now,
        )
        if not updated:
            return self._view(session, config, transitioned=False)

        logger.info(
            f"Survey submitted: session={session.id[:12]} reason={reason_key(exit_reason)} "
            f"offer_type={offer_type.value}"
        )
        self._advance_after_survey(session, config, now)
        return self._view(session, config, transitioned=True)

    def _advance_after_survey(self, session: CancelSessionDB, config: CancelFlowConfig, now: datetime) -> bool:
        if session.offer_type_presented in (None, OfferType.NONE):
            return self._compare_and_swap(session, "skip_offer", {CancelSessionDB.resolved_at: now}, now)
        return self._compare_and_swap(session, "present_offer", {}, now)

    def respond_to_offer(self, token: str, accepted: bool, now: Optional[datetime] = None) -> SessionView:
        """
        Accept (SAVED) or decline (CANCELLED) the presented offer. Repeating
        the call on a finished session returns the same terminal view.
        """
        now = now or utcnow()
        session, config = self._load(token)

        if session.status != CancelSessionStatus.OFFER_PRESENTED:
            logger.info(f"Offer response ignored for session {session.id[:12]} in status {session.status.value}")
            return self._view(session, config, transitioned=False)

        action = "accept_offer" if accepted else "decline_offer"
        updated = self._compare_and_swap(
            session,
            action,
            {CancelSessionDB.offer_accepted: bool(accepted), CancelSessionDB.resolved_at: now},
            now,
        )
        if not updated:
            return self._view(session, config, transitioned=False)

        logger.info(f"Offer {'accepted' if accepted else 'declined'}: session={session.id[:12]}")
        if accepted:
            self._record_save(session, config)
        return self._view(session, config, transitioned=True)

    def complete(self, token: str, action, now: Optional[datetime] = None) -> SessionView:
        """Finalize from any non-terminal state. Status is always CANCELLED."""
        now = now or utcnow()
        try:
            action = CompletionAction(action)
        except ValueError:
            raise ValidationError("action must be 'cancelled' or 'abandoned'")
        session, config = self._load(token)

        if session.status in TERMINAL_STATUSES:
            return self._view(session, config, transitioned=False)

        updated = self._compare_and_swap(
            session,
            "complete",
            {CancelSessionDB.completion_action: action, CancelSessionDB.resolved_at: now},
            now,
        )
        if updated:
            logger.info(f"Cancel session completed: session={session.id[:12]} action={action.value}")
        return self._view(session, config, transitioned=updated)

    def _compare_and_swap(self, session: CancelSessionDB, action: str, values: Dict, now: datetime) -> bool:
        """Apply a transition only if the stored status is still the expected one."""
        current = session.status
        target = next_status(current, action)
        if target is None:
            return False

        values = dict(values)
        values[CancelSessionDB.status] = target
        values[CancelSessionDB.updated_at] = now

        updated = self.db.query(CancelSessionDB).filter(
            CancelSessionDB.id == session.id,
            CancelSessionDB.status == current,
        ).update(values, synchronize_session=False)
        self.db.refresh(session)

        if updated == 0:
            logger.info(
                f"Session {session.id[:12]} moved concurrently: expected {current.value}, "
                f"found {session.status.value}"
            )
        return bool(updated)

    # =========================================================================
    # SAVES
    # =========================================================================

    def _record_save(self, session: CancelSessionDB, config: CancelFlowConfig) -> Optional[SavedCustomerDB]:
        """Write the saved-customer record, then hand the offer to the applier."""
        offer = build_offer(config.offer_settings, session.exit_reason or "", session.offer_type_presented)
        if offer is None:
            return None

        saved = SavedCustomerDB(
            id=str(uuid4()),
            cancel_session_id=session.id,
            account_id=session.account_id,
            customer_reference=session.customer_reference,
            subscription_reference=session.subscription_reference,
            save_type=offer.type,
            discount_percentage=offer.percentage,
            discount_duration_months=offer.duration_months if offer.type == OfferType.DISCOUNT else None,
            pause_months=offer.duration_months if offer.type == OfferType.PAUSE else None,
        )
        try:
            with self.db.begin_nested():
                self.db.add(saved)
                self.db.flush()
        except IntegrityError:
            logger.info(f"Saved customer already recorded for session {session.id[:12]}")
            return self.db.query(SavedCustomerDB).filter(
                SavedCustomerDB.cancel_session_id == session.id
            ).first()

        if self.offer_applier is not None:
            try:
                self.offer_applier.apply(saved)
                saved.offer_applied = True
            except Exception as e:
                saved.apply_error = str(e)[:500]
                logger.error(f"Offer apply failed for session {session.id[:12]}: {e}")
            self.db.flush()

        notify_safely(self.notifier, "customer_saved", saved)
        logger.info(f"Customer saved: session={session.id[:12]} type={offer.type.value}")
        return saved

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _get_session(self, session_id: str) -> Optional[CancelSessionDB]:
        return self.db.query(CancelSessionDB).filter(CancelSessionDB.id == session_id).first()

    def _pinned_config(self, session: CancelSessionDB) -> CancelFlowConfig:
        return self.configs.get_version(session.account_id, session.config_version)

    def _load(self, token: str):
        session = self._get_session(hash_token(token))
        if session is None:
            raise NotFound("Session not found")
        return session, self._pinned_config(session)

    def _validate_reason(self, config: CancelFlowConfig, exit_reason: Optional[str]) -> str:
        exit_reason = (exit_reason or "").strip()
        if not exit_reason:
            raise ValidationError("Exit reason is required")
        if len(exit_reason) > MAX_REASON_LENGTH:
            raise ValidationError("Exit reason is too long")

        if reason_key(exit_reason) == OTHER_REASON:
            detail = exit_reason[len(OTHER_REASON):].lstrip(":").strip()
            return f"{OTHER_REASON}: {detail}" if detail else OTHER_REASON
        if exit_reason not in config.allowed_reasons():
            raise ValidationError(f"Unknown exit reason: {exit_reason}")
        return exit_reason

    def _view(self, session: CancelSessionDB, config: CancelFlowConfig, transitioned: bool = True) -> SessionView:
        offer = None
        if session.status == CancelSessionStatus.OFFER_PRESENTED or (
            session.status == CancelSessionStatus.SAVED and session.offer_type_presented
        ):
            offer = build_offer(config.offer_settings, session.exit_reason or "", session.offer_type_presented)
        return SessionView(session=session, config=config, offer=offer, transitioned=transitioned)

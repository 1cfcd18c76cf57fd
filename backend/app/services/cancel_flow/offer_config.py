"""
Cancel Flow Configuration

Versioned per-account configuration read by the cancel session engine:
survey reasons, per-reason offer mapping, discount/pause parameters,
branding and widget display settings.

Each publish creates a new immutable version. Sessions pin the version
they were created with, so a resumed session sees the same offer even if
the account publishes a new configuration mid-flow.
"""
from typing import Dict, List, Literal, Optional
from uuid import uuid4
import logging

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import ConflictRace, NotFound
from ...models.db_models import OfferConfigDB, OfferType


logger = logging.getLogger(__name__)


DEFAULT_REASONS = [
    "too_expensive",
    "not_using_enough",
    "missing_features",
    "found_alternative",
    "technical_issues",
    "need_a_break",
]

OTHER_REASON = "other"


# =============================================================================
# CONFIG MODELS
# =============================================================================

class SurveyOptions(BaseModel):
    reasons: List[str] = Field(default_factory=lambda: list(DEFAULT_REASONS))
    custom_reasons: List[str] = Field(default_factory=list)
    display_order: List[str] = Field(default_factory=lambda: list(DEFAULT_REASONS))


class ReasonMapping(BaseModel):
    """Per-reason override. Unset durations fall back to the account-wide values."""
    offer_type: OfferType
    discount_percentage: Optional[int] = Field(None, ge=1, le=100)
    discount_duration_months: Optional[int] = Field(None, ge=1, le=36)
    pause_duration_months: Optional[int] = Field(None, ge=1, le=12)


class OfferSettings(BaseModel):
    default_offer: OfferType = OfferType.NONE
    reason_mappings: Dict[str, ReasonMapping] = Field(default_factory=dict)
    discount_percentage: int = Field(20, ge=1, le=100)
    discount_duration_months: int = Field(3, ge=1, le=36)
    pause_duration_months: int = Field(1, ge=1, le=12)


class Branding(BaseModel):
    primary_color: str = "#14B8A6"
    logo_url: Optional[str] = None
    dark_mode: bool = True


class WidgetSettings(BaseModel):
    display_mode: Literal["modal", "hosted"] = "modal"
    accept_button_text: str = "Accept Offer"
    decline_button_text: str = "Continue Cancellation"


class CancelFlowConfig(BaseModel):
    """Immutable snapshot of one published configuration version."""
    version: int = 0
    survey_options: SurveyOptions = Field(default_factory=SurveyOptions)
    offer_settings: OfferSettings = Field(default_factory=OfferSettings)
    branding: Branding = Field(default_factory=Branding)
    widget_settings: WidgetSettings = Field(default_factory=WidgetSettings)
    is_active: bool = True

    def allowed_reasons(self) -> List[str]:
        """Configured survey reasons plus the free-text 'other' escape hatch."""
        return list(self.survey_options.reasons) + list(self.survey_options.custom_reasons) + [OTHER_REASON]

    def public_view(self) -> dict:
        """What the customer-facing widget is allowed to see."""
        return {
            "version": self.version,
            "survey_options": self.survey_options.model_dump(),
            "branding": self.branding.model_dump(),
            "widget_settings": self.widget_settings.model_dump(),
        }


def _to_model(row: OfferConfigDB) -> CancelFlowConfig:
    return CancelFlowConfig(
        version=row.version,
        survey_options=SurveyOptions.model_validate(row.survey_options),
        offer_settings=OfferSettings.model_validate(row.offer_settings),
        branding=Branding.model_validate(row.branding),
        widget_settings=WidgetSettings.model_validate(row.widget_settings),
        is_active=row.is_active,
    )


# =============================================================================
# STORE
# =============================================================================

class OfferConfigStore:
    """Publish and read versioned cancel-flow configuration."""

    def __init__(self, db: Session):
        self.db = db

    def latest(self, account_id: str) -> Optional[CancelFlowConfig]:
        row = self.db.query(OfferConfigDB).filter(
            OfferConfigDB.account_id == account_id
        ).order_by(OfferConfigDB.version.desc()).first()
        return _to_model(row) if row else None

    def get_version(self, account_id: str, version: int) -> CancelFlowConfig:
        row = self.db.query(OfferConfigDB).filter(
            OfferConfigDB.account_id == account_id,
            OfferConfigDB.version == version,
        ).first()
        if not row:
            raise NotFound(f"Offer config version {version} not found for account {account_id}")
        return _to_model(row)

    def publish(self, account_id: str, config: CancelFlowConfig) -> CancelFlowConfig:
        """
        Store `config` as the account's next version.

        Raises:
            ConflictRace: another publish claimed the same version number
        """
        current = self.db.query(func.max(OfferConfigDB.version)).filter(
            OfferConfigDB.account_id == account_id
        ).scalar()
        version = (current or 0) + 1

        row = OfferConfigDB(
            id=str(uuid4()),
            account_id=account_id,
            version=version,
            survey_options=config.survey_options.model_dump(mode="json"),
            offer_settings=config.offer_settings.model_dump(mode="json"),
            branding=config.branding.model_dump(mode="json"),
            widget_settings=config.widget_settings.model_dump(mode="json"),
            is_active=config.is_active,
        )
        try:
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            raise ConflictRace(f"Offer config version {version} was published concurrently")

        logger.info(f"Offer config published: account={account_id} version={version}")
        return _to_model(row)

    def ensure_default(self, account_id: str) -> CancelFlowConfig:
        """Latest config, publishing the defaults as version 1 for a new account."""
        config = self.latest(account_id)
        if config is not None:
            return config
        try:
            return self.publish(account_id, CancelFlowConfig())
        except ConflictRace:
            return self.latest(account_id)

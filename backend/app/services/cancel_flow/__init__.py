"""
Cancel Flow

Token-addressed cancellation widget sessions presenting retention offers.
"""
from .offer_config import (
    CancelFlowConfig,
    OfferConfigStore,
    OfferSettings,
    ReasonMapping,
    SurveyOptions,
    Branding,
    WidgetSettings,
    DEFAULT_REASONS,
)
from .offer_resolver import Offer, build_offer, resolve_offer, resolve_offer_type
from .session_engine import (
    CancelSessionEngine,
    SessionView,
    SESSION_TRANSITIONS,
    hash_token,
)

__all__ = [
    "CancelFlowConfig",
    "OfferConfigStore",
    "OfferSettings",
    "ReasonMapping",
    "SurveyOptions",
    "Branding",
    "WidgetSettings",
    "DEFAULT_REASONS",
    "Offer",
    "build_offer",
    "resolve_offer",
    "resolve_offer_type",
    "CancelSessionEngine",
    "SessionView",
    "SESSION_TRANSITIONS",
    "hash_token",
]

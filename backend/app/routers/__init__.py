"""ChurnShield Recovery Engine - API Routers"""
from .admin import router as admin_router
from .cancel_session import router as cancel_session_router
from .offer_config import router as offer_config_router
from .recovery import router as recovery_router
from .risk import router as risk_router
from .scheduler import router as scheduler_router
from .webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "cancel_session_router",
    "offer_config_router",
    "recovery_router",
    "risk_router",
    "scheduler_router",
    "webhooks_router",
]

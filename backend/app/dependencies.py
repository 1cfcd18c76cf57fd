"""
Shared FastAPI dependencies.

Rate limiters and external collaborators are created once in main.py and
stored on app.state; handlers receive them through these dependencies.
"""
import os

from fastapi import Request

from .services.collaborators import Notifier, OfferApplier
from .services.rate_limit import FixedWindowRateLimiter


def get_recompute_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.recompute_limiter


def get_widget_limiter(request: Request) -> FixedWindowRateLimiter:
    return request.app.state.widget_limiter


def get_offer_applier(request: Request) -> OfferApplier:
    return request.app.state.offer_applier


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


# Peers allowed to set X-Forwarded-For (comma-separated addresses)
TRUSTED_PROXIES = frozenset(
    host.strip() for host in os.getenv("TRUSTED_PROXIES", "").split(",") if host.strip()
)


def client_ip(request: Request) -> str:
    """
    Address used for per-client rate limiting.

    X-Forwarded-For is only honored when the socket peer is a trusted proxy.
    Hops are read right to left and the first untrusted one wins, so a client
    cannot pick its own identity by prepending addresses.
    """
    peer = request.client.host if request.client is not None else "unknown"
    if peer not in TRUSTED_PROXIES:
        return peer

    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in TRUSTED_PROXIES:
            return hop
    return peer

"""
ChurnShield Recovery Engine - FastAPI Application

Main entry point for the ChurnShield backend.

Architecture:
- Billing webhooks → RiskSignalStore → RiskScorer → RiskSnapshot
- Billing webhooks → RecoveryCaseManager → AttributionLedger
- Cancel widget → CancelSessionEngine (reads versioned OfferConfig)
"""
from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import init_db
from .errors import EngineError, RateLimited
from .routers import (
    admin_router,
    cancel_session_router,
    offer_config_router,
    recovery_router,
    risk_router,
    scheduler_router,
    webhooks_router,
)
from .services.collaborators import LoggingNotifier, LoggingOfferApplier
from .services.rate_limit import FixedWindowRateLimiter


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

RECOMPUTE_MAX_RUNS = int(os.getenv("RECOMPUTE_MAX_RUNS", "2"))
RECOMPUTE_WINDOW_SECONDS = int(os.getenv("RECOMPUTE_WINDOW_SECONDS", "300"))
WIDGET_RATE_LIMIT = int(os.getenv("WIDGET_RATE_LIMIT", "10"))
WIDGET_RATE_WINDOW_SECONDS = int(os.getenv("WIDGET_RATE_WINDOW_SECONDS", "60"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


def create_app() -> FastAPI:
    """Build the application with fresh, instance-owned limiters and collaborators."""
    app = FastAPI(
        lifespan=lifespan,
        title="ChurnShield Recovery Engine",
        description="""
        ChurnShield Recovery & Retention Engine

        Scores churn risk from billing signals, manages time-boxed payment
        recovery cases with exactly-once revenue attribution, and drives the
        token-addressed cancellation widget that presents retention offers.

        ## Key Principles
        - Every billing event is safe to redeliver
        - Case status moves only open → recovered | expired, via guarded writes
        - One ledger entry per (case, source event)
        - Cancel sessions never move backwards
        """,
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Instance-owned throttles: reset on restart, never shared across apps
    app.state.recompute_limiter = FixedWindowRateLimiter(RECOMPUTE_MAX_RUNS, RECOMPUTE_WINDOW_SECONDS, capacity=1)
    app.state.widget_limiter = FixedWindowRateLimiter(WIDGET_RATE_LIMIT, WIDGET_RATE_WINDOW_SECONDS, capacity=4096)
    app.state.offer_applier = LoggingOfferApplier()
    app.state.notifier = LoggingNotifier()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # The widget is embedded on customer sites
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        """Operator-facing rendering of engine errors."""
        headers = None
        if isinstance(exc, RateLimited) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
            headers=headers,
        )

    # Include routers
    app.include_router(cancel_session_router)
    app.include_router(offer_config_router)
    app.include_router(recovery_router)
    app.include_router(risk_router)
    app.include_router(admin_router)
    app.include_router(scheduler_router)
    app.include_router(webhooks_router)

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "ChurnShield Recovery Engine",
            "version": "1.0.0",
            "docs": "/docs",
            "components": [
                "risk_scorer",
                "recovery_case_manager",
                "priority_ranker",
                "attribution_ledger",
                "cancel_session_engine",
            ],
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)

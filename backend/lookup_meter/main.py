"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, build the anonymous rate limiter
    (and start its sweeper), the lookup client, and the coordinator.
  • On shutdown: stop the sweeper, close the lookup client, dispose the engine.

Routers:
  • /search  — metered lookup
  • /credits — balance, history, payment top-up
  • /admin   — operator tools (X-Admin-Token)
  • /health  — shallow liveness probe

Error families map to HTTP once, here:
  MeteringRejection → 402 / 403 / 409 / 429, UpstreamUnavailable → 503,
  LedgerInvariantError → 500 (logged as a defect).
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from lookup_meter.core.config import settings
from lookup_meter.core.database import engine
from lookup_meter.core.errors import (
    AccountDisabled,
    InsufficientBalance,
    LedgerInvariantError,
    MeteringRejection,
    NegativeBalance,
    RateLimited,
    UpstreamUnavailable,
)
from lookup_meter.routers.admin import router as admin_router
from lookup_meter.routers.credits import router as credits_router
from lookup_meter.routers.search import router as search_router
from lookup_meter.services.lookup_client import RobloxLookupClient
from lookup_meter.services.metering import MeteringCoordinator, SearchCosts
from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

_REJECTION_STATUS: dict[type[MeteringRejection], int] = {
    InsufficientBalance: status.HTTP_402_PAYMENT_REQUIRED,
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    AccountDisabled: status.HTTP_403_FORBIDDEN,
    NegativeBalance: status.HTTP_409_CONFLICT,
}


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    # Startup: verify DB is reachable
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection verified ✓")
    except Exception:
        logger.warning(
            "Could not reach the database on startup. "
            "The app will start, but requests will fail until the DB is available."
        )

    # Startup: process-scoped metering components
    rate_limiter = SlidingWindowRateLimiter(
        limit=settings.ANON_RATE_LIMIT,
        window_seconds=settings.ANON_RATE_WINDOW_SECONDS,
    )
    rate_limiter.start(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS)
    lookup_client = RobloxLookupClient()
    app.state.rate_limiter = rate_limiter
    app.state.coordinator = MeteringCoordinator(
        lookup_client=lookup_client,
        rate_limiter=rate_limiter,
        costs=SearchCosts.from_settings(),
        lookup_timeout_s=settings.LOOKUP_TIMEOUT_SECONDS,
    )
    logger.info(
        "Metering ready (public mode %s, anon limit %d/%ds)",
        "on" if settings.PUBLIC_MODE_ENABLED else "off",
        settings.ANON_RATE_LIMIT,
        settings.ANON_RATE_WINDOW_SECONDS,
    )

    yield  # ← application runs here

    # Shutdown
    await rate_limiter.stop()
    await lookup_client.aclose()
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "Usage metering for Roblox account lookups — "
        "credit ledger, duplicate-search cache, anonymous rate limiting."
    ),
    lifespan=lifespan,
)

# Mount routers
app.include_router(search_router)
app.include_router(credits_router, prefix="/credits")
app.include_router(admin_router, prefix="/admin")


# ── Error handlers ──────────────────────────────────────────
@app.exception_handler(MeteringRejection)
async def handle_rejection(_request: Request, exc: MeteringRejection) -> JSONResponse:
    status_code = _REJECTION_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(UpstreamUnavailable)
async def handle_upstream(_request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": exc.code, "message": str(exc), "retryable": True},
    )


@app.exception_handler(LedgerInvariantError)
async def handle_ledger_defect(request: Request, exc: LedgerInvariantError) -> JSONResponse:
    logger.error("Ledger invariant violation on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": exc.code, "message": "Internal ledger error."},
    )


# ── Health check ────────────────────────────────────────────
@app.get(
    "/health",
    tags=["System"],
    summary="Liveness probe",
)
async def health_check() -> dict[str, str]:
    """Shallow health check — confirms the process is alive."""
    return {"status": "healthy"}

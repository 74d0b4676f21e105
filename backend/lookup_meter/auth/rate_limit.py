"""
FastAPI dependencies exposing the process-scoped metering components.

The rate limiter and the coordinator are built once in the app lifespan
and stored on app.state; routers receive them through these dependencies
so tests can swap in their own instances.

Order in the request pipeline: CALLER → COORDINATOR (rate check for
anonymous callers happens inside) → ROUTER LOGIC.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from lookup_meter.services.metering import MeteringCoordinator
from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter

_NOT_READY = HTTPException(
    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    detail="Service is starting up. Please try again later.",
)


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise _NOT_READY
    return limiter


def get_coordinator(request: Request) -> MeteringCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise _NOT_READY
    return coordinator

"""
Admin router — operator tools. Every route requires X-Admin-Token.

Endpoints:
  POST   /admin/accounts/{account_id}/adjust        — manual correction
  POST   /admin/accounts/{account_id}/refund        — refund a charged search
  POST   /admin/accounts/{account_id}/status        — soft-disable / enable
  GET    /admin/accounts/{account_id}/transactions  — read-only history
  GET    /admin/cache/stats                         — read-only cache stats
  POST   /admin/cache/evict                         — drop idle cache entries
  GET    /admin/rate-limit/{identity}               — anonymous window status
  DELETE /admin/rate-limit/{identity}               — reset that window
"""

import datetime
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.auth.dependencies import require_admin
from lookup_meter.auth.rate_limit import get_rate_limiter
from lookup_meter.core.database import get_db_session
from lookup_meter.schemas.admin import (
    CacheStatsOut,
    EvictRequest,
    EvictResponse,
    RateLimitStatusOut,
)
from lookup_meter.schemas.ledger import (
    AccountStatusRequest,
    AdjustmentRequest,
    BalanceChangeOut,
    RefundRequest,
    TransactionOut,
)
from lookup_meter.services import ledger, search_cache
from lookup_meter.services.ledger import MAX_HISTORY_PAGE
from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])

DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Limiter = Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)]
AccountId = Annotated[str, Path(min_length=1, max_length=64)]


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# ── Accounts ────────────────────────────────────────────────
@router.post(
    "/accounts/{account_id}/adjust",
    response_model=BalanceChangeOut,
    summary="Manually adjust an account balance",
)
async def adjust_balance(
    account_id: AccountId,
    payload: AdjustmentRequest,
    session: DbSession,
) -> BalanceChangeOut:
    """Negative adjustments that would overdraw return 409."""
    try:
        balance = await ledger.adjust(
            session, account_id, payload.amount, payload.actor, payload.description,
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return BalanceChangeOut(account_id=account_id, balance=balance)


@router.post(
    "/accounts/{account_id}/refund",
    response_model=BalanceChangeOut,
    summary="Refund credits charged for a search",
)
async def refund_search(
    account_id: AccountId,
    payload: RefundRequest,
    session: DbSession,
) -> BalanceChangeOut:
    try:
        balance = await ledger.refund(
            session, account_id, payload.amount, payload.request_id, payload.description,
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return BalanceChangeOut(account_id=account_id, balance=balance)


@router.post(
    "/accounts/{account_id}/status",
    response_model=BalanceChangeOut,
    summary="Enable or soft-disable an account",
)
async def set_status(
    account_id: AccountId,
    payload: AccountStatusRequest,
    session: DbSession,
) -> BalanceChangeOut:
    try:
        snapshot = await ledger.set_account_active(session, account_id, payload.active)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return BalanceChangeOut(account_id=account_id, balance=snapshot.balance)


@router.get(
    "/accounts/{account_id}/transactions",
    response_model=list[TransactionOut],
    summary="Ledger history for any account",
)
async def account_transactions(
    account_id: AccountId,
    session: DbSession,
    limit: int = Query(default=50, ge=1, le=MAX_HISTORY_PAGE),
    offset: int = Query(default=0, ge=0),
) -> list[TransactionOut]:
    try:
        rows = await ledger.history(session, account_id, limit=limit, offset=offset)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return [TransactionOut.model_validate(row) for row in rows]


# ── Cache ───────────────────────────────────────────────────
@router.get(
    "/cache/stats",
    response_model=CacheStatsOut,
    summary="Duplicate-search cache statistics",
)
async def cache_stats(
    session: DbSession,
    account_id: str | None = Query(default=None, max_length=64),
) -> CacheStatsOut:
    stats = await search_cache.get_cache_stats(session, account_id)
    return CacheStatsOut.model_validate(stats)


@router.post(
    "/cache/evict",
    response_model=EvictResponse,
    summary="Evict cache entries not accessed recently",
)
async def evict_cache(payload: EvictRequest, session: DbSession) -> EvictResponse:
    deleted = await search_cache.evict_older_than(
        session, datetime.timedelta(days=payload.older_than_days),
    )
    return EvictResponse(deleted=deleted)


# ── Anonymous rate limit ────────────────────────────────────
def _rate_status(identity: str, limiter: SlidingWindowRateLimiter) -> RateLimitStatusOut:
    decision = limiter.status(identity)
    return RateLimitStatusOut(
        identity=identity,
        count=decision.count,
        limit=limiter.limit,
        remaining=decision.remaining,
        retry_after_seconds=decision.retry_after_seconds,
    )


@router.get(
    "/rate-limit/{identity}",
    response_model=RateLimitStatusOut,
    summary="Current anonymous window for an identity",
)
async def rate_limit_status(identity: str, limiter: Limiter) -> RateLimitStatusOut:
    return _rate_status(identity, limiter)


@router.delete(
    "/rate-limit/{identity}",
    response_model=RateLimitStatusOut,
    summary="Reset the anonymous window for an identity",
)
async def reset_rate_limit(identity: str, limiter: Limiter) -> RateLimitStatusOut:
    limiter.reset(identity)
    return _rate_status(identity, limiter)

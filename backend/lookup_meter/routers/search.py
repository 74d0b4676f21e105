"""
Search router — the single metered entry point.

POST /search
  1. Resolves the caller (account via X-Account-Id, or anonymous).
  2. Validates the payload (Pydantic; term length, mode).
  3. Hands off to the MeteringCoordinator, which rate-checks, serves from
     cache, checks balance, calls the lookup service, and settles.
  4. Returns the result annotated with how it was metered.

Rejections (402 / 403 / 429 / 503) are raised as typed errors by the
coordinator and rendered by the handlers registered in main.py.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.auth.dependencies import CallerContext, get_caller
from lookup_meter.auth.rate_limit import get_coordinator
from lookup_meter.core.database import get_db_session
from lookup_meter.schemas.search import SearchRequest, SearchResponse
from lookup_meter.services.metering import MeteringCoordinator, SearchCommand

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])

DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Caller = Annotated[CallerContext, Depends(get_caller)]
Coordinator = Annotated[MeteringCoordinator, Depends(get_coordinator)]


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Metered account lookup",
    description=(
        "Looks up Roblox accounts by exact username or keyword. Repeat "
        "searches are served from cache for free; exact searches that find "
        "nothing are free; everything else costs credits."
    ),
)
async def search(
    payload: SearchRequest,
    session: DbSession,
    caller: Caller,
    coordinator: Coordinator,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> SearchResponse:
    """
    The client never supplies a cost; pricing is decided server-side
    from the mode. Retrying with the same Idempotency-Key after a lost
    response is served from cache without a second charge.
    """
    fields = {
        "term": payload.term,
        "mode": payload.mode,
        "account_id": caller.account_id,
        "identity": caller.identity,
    }
    if idempotency_key:
        fields["request_id"] = idempotency_key
    command = SearchCommand(**fields)

    try:
        outcome = await coordinator.search(session, command)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    return SearchResponse(
        request_id=outcome.request_id,
        mode=outcome.mode,
        status=outcome.status.value,
        result_count=outcome.result_count,
        from_cache=outcome.from_cache,
        free=outcome.free,
        credits_charged=outcome.credits_charged,
        transaction_id=outcome.transaction_id,
        balance=outcome.balance,
        payload=outcome.payload,
    )

"""
Credits router — balance, history, and the payment collaborator's top-up.

Endpoints:
  GET  /credits/balance       — summary for the caller's account
  GET  /credits/transactions  — caller's ledger, newest first
  POST /credits/top-up        — credit a confirmed payment (X-Payment-Secret)

Top-ups are idempotent per (account_id, source_id): a webhook replay
returns the current balance without crediting twice.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.auth.dependencies import (
    CallerContext,
    get_account_caller,
    require_payment_secret,
)
from lookup_meter.core.database import get_db_session
from lookup_meter.schemas.ledger import (
    BalanceChangeOut,
    CreditSummaryOut,
    TopUpRequest,
    TransactionOut,
)
from lookup_meter.services import ledger
from lookup_meter.services.ledger import MAX_HISTORY_PAGE

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Credits"])

DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Account = Annotated[CallerContext, Depends(get_account_caller)]


@router.get(
    "/balance",
    response_model=CreditSummaryOut,
    summary="Credit balance for the caller",
)
async def get_balance(session: DbSession, caller: Account) -> CreditSummaryOut:
    summary = await ledger.get_credit_summary(session, caller.account_id)
    return CreditSummaryOut.model_validate(summary, from_attributes=True)


@router.get(
    "/transactions",
    response_model=list[TransactionOut],
    summary="Ledger history for the caller",
)
async def list_transactions(
    session: DbSession,
    caller: Account,
    limit: int = Query(default=50, ge=1, le=MAX_HISTORY_PAGE),
    offset: int = Query(default=0, ge=0),
) -> list[TransactionOut]:
    rows = await ledger.history(session, caller.account_id, limit=limit, offset=offset)
    return [TransactionOut.model_validate(row) for row in rows]


@router.post(
    "/top-up",
    response_model=BalanceChangeOut,
    status_code=status.HTTP_200_OK,
    summary="Credit a confirmed payment",
    description=(
        "Called by the payment collaborator once a payment succeeds. "
        "Replaying the same source_id never double-credits."
    ),
    dependencies=[Depends(require_payment_secret)],
)
async def top_up(payload: TopUpRequest, session: DbSession) -> BalanceChangeOut:
    try:
        balance = await ledger.credit(
            session,
            payload.account_id,
            payload.amount,
            payload.source_id,
            description=payload.description,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    return BalanceChangeOut(account_id=payload.account_id, balance=balance)

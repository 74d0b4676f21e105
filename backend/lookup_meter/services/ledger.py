"""
Credit ledger service.

Maintains one balance row per account plus an append-only transaction log,
enforcing balance = total_purchased - total_used on every code path.

Design decisions:
  • One database transaction per operation. Each public function commits
    on success and rolls back on ANY exception, so a rejected or failed
    operation never leaves a partial write behind.
  • Charges are a single conditional UPDATE
        UPDATE … SET balance = balance - :cost WHERE balance >= :cost
    so two concurrent charges against the last credit resolve to exactly
    one success and one InsufficientBalance. Balance is never read and
    then written across two round trips without a guard.
  • Other mutations lock the balance row first (SELECT … FOR UPDATE on
    PostgreSQL; SQLite serializes writers on its database lock).
  • Arithmetic is re-verified in Python before every insert. A mismatch is
    a defect: it is logged, the transaction is rolled back, and
    LedgerInvariantError propagates. Nothing is ever clamped.
  • Totals bookkeeping: PURCHASE / REFUND / ADJUSTMENT-up add to
    total_purchased; USAGE / ADJUSTMENT-down add to total_used.
"""

from __future__ import annotations

import datetime
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from sqlalchemy import Row, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.core.config import settings
from lookup_meter.core.database import dialect_insert
from lookup_meter.core.errors import (
    AccountDisabled,
    DuplicatePurchaseError,
    InsufficientBalance,
    LedgerInvariantError,
    NegativeBalance,
)
from lookup_meter.models.account_balance import AccountBalance, utcnow
from lookup_meter.models.ledger_transaction import LedgerTransaction, TransactionKind

logger = logging.getLogger(__name__)

_ACCOUNT_ID_RE = re.compile(r"^[\x21-\x7e]{1,64}$")
MAX_HISTORY_PAGE = 500


# ── Result types ────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    account_id: str
    balance: int
    total_purchased: int
    total_used: int
    is_active: bool = True
    last_purchase_at: datetime.datetime | None = None


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    """What a metering decision wrote to the ledger."""

    transaction_id: int
    account_id: str
    kind: TransactionKind
    amount: int
    balance_before: int
    balance_after: int


@dataclass(frozen=True, slots=True)
class CreditSummary:
    account_id: str
    balance: int
    total_purchased: int
    total_used: int
    is_active: bool
    last_purchase_at: datetime.datetime | None
    needs_alert: bool
    recent_transactions: list[LedgerTransaction] = field(default_factory=list)


# ── Validation ──────────────────────────────────────────────
def validate_account_id(account_id: str) -> str:
    """Account ids are opaque, 1-64 printable ASCII characters, no spaces."""
    if not isinstance(account_id, str) or not _ACCOUNT_ID_RE.match(account_id):
        raise ValueError(f"Malformed account id: {account_id!r}")
    return account_id


def validate_source_id(source_id: str) -> str:
    """
    Payment identifiers are free-form strings checked against
    SOURCE_ID_PATTERN only. They are never coerced to numbers.
    """
    if not isinstance(source_id, str) or not re.fullmatch(
        settings.SOURCE_ID_PATTERN, source_id
    ):
        raise ValueError(f"Malformed payment source id: {source_id!r}")
    return source_id


def _verify_entry(
    account_id: str,
    kind: TransactionKind,
    amount: int,
    balance_before: int,
    balance_after: int,
) -> None:
    """Refuse to persist a row that breaks ledger arithmetic."""
    problem = None
    if balance_before < 0 or balance_after < 0:
        problem = "negative balance"
    elif balance_after != balance_before + amount:
        problem = "balance_after != balance_before + amount"
    elif kind is TransactionKind.USAGE and amount >= 0:
        problem = "USAGE amount must be negative"
    elif kind is TransactionKind.FREE_USAGE and amount != 0:
        problem = "FREE_USAGE amount must be zero"
    elif kind in (TransactionKind.PURCHASE, TransactionKind.REFUND) and amount <= 0:
        problem = f"{kind.value} amount must be positive"
    elif kind is TransactionKind.ADJUSTMENT and amount == 0:
        problem = "ADJUSTMENT amount must be non-zero"

    if problem is not None:
        logger.error(
            "Ledger invariant violated for account %s: %s "
            "(kind=%s amount=%d before=%d after=%d)",
            account_id, problem, kind.value, amount, balance_before, balance_after,
        )
        raise LedgerInvariantError(problem)


def _verify_row(account_id: str, balance: int, purchased: int, used: int) -> None:
    if balance < 0 or purchased < 0 or used < 0 or balance != purchased - used:
        logger.error(
            "Account %s row inconsistent: balance=%d purchased=%d used=%d",
            account_id, balance, purchased, used,
        )
        raise LedgerInvariantError(
            f"balance {balance} != total_purchased {purchased} - total_used {used}"
        )


# ── Transaction plumbing ────────────────────────────────────
@asynccontextmanager
async def _ledger_transaction(session: AsyncSession) -> AsyncIterator[None]:
    """Commit on success, roll back on any exception."""
    try:
        yield
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


async def _ensure_account(session: AsyncSession, account_id: str) -> None:
    """Create the zero-balance row if it does not exist yet."""
    stmt = dialect_insert(session, AccountBalance).values(
        account_id=account_id,
        balance=0,
        total_purchased=0,
        total_used=0,
        is_active=True,
    ).on_conflict_do_nothing(index_elements=["account_id"])
    await session.execute(stmt)


async def _read_snapshot(
    session: AsyncSession,
    account_id: str,
    *,
    lock: bool = False,
) -> BalanceSnapshot:
    stmt = select(
        AccountBalance.account_id,
        AccountBalance.balance,
        AccountBalance.total_purchased,
        AccountBalance.total_used,
        AccountBalance.is_active,
        AccountBalance.last_purchase_at,
    ).where(AccountBalance.account_id == account_id)
    if lock:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).one()
    return BalanceSnapshot(
        account_id=row.account_id,
        balance=row.balance,
        total_purchased=row.total_purchased,
        total_used=row.total_used,
        is_active=bool(row.is_active),
        last_purchase_at=row.last_purchase_at,
    )


async def _apply_delta(
    session: AsyncSession,
    account_id: str,
    *,
    purchased: int = 0,
    used: int = 0,
    min_balance: int | None = None,
    require_active: bool = False,
    mark_purchase: bool = False,
) -> Row | None:
    """
    Atomically move the balance row by (purchased - used).

    With min_balance set, the UPDATE only applies when the current balance
    is at least that much; returns None when the guard fails.
    """
    values: dict = {
        "balance": AccountBalance.balance + purchased - used,
        "total_purchased": AccountBalance.total_purchased + purchased,
        "total_used": AccountBalance.total_used + used,
        "updated_at": utcnow(),
    }
    if mark_purchase:
        values["last_purchase_at"] = utcnow()

    stmt = update(AccountBalance).where(AccountBalance.account_id == account_id)
    if min_balance is not None:
        stmt = stmt.where(AccountBalance.balance >= min_balance)
    if require_active:
        stmt = stmt.where(AccountBalance.is_active.is_(True))
    stmt = (
        stmt.values(**values)
        .returning(
            AccountBalance.balance,
            AccountBalance.total_purchased,
            AccountBalance.total_used,
        )
        .execution_options(synchronize_session=False)
    )

    row = (await session.execute(stmt)).one_or_none()
    if row is not None:
        _verify_row(account_id, row.balance, row.total_purchased, row.total_used)
    return row


async def _append(
    session: AsyncSession,
    *,
    account_id: str,
    kind: TransactionKind,
    amount: int,
    balance_before: int,
    balance_after: int,
    description: str,
    related_request_id: str | None = None,
    source_id: str | None = None,
    actor: str | None = None,
) -> LedgerReceipt:
    _verify_entry(account_id, kind, amount, balance_before, balance_after)
    entry = LedgerTransaction(
        account_id=account_id,
        kind=kind.value,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        related_request_id=related_request_id,
        source_id=source_id,
        actor=actor,
        description=description,
    )
    session.add(entry)
    await session.flush()  # assigns entry.id, surfaces constraint errors here
    return LedgerReceipt(
        transaction_id=entry.id,
        account_id=account_id,
        kind=kind,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
    )


# ── Public API ──────────────────────────────────────────────
async def get_balance(session: AsyncSession, account_id: str) -> BalanceSnapshot:
    """Current balance; creates a zero-balance account on first reference."""
    validate_account_id(account_id)
    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        snapshot = await _read_snapshot(session, account_id)
    return snapshot


async def charge(
    session: AsyncSession,
    account_id: str,
    cost: int,
    request_id: str | None = None,
    description: str = "",
) -> LedgerReceipt:
    """
    Deduct `cost` credits and append a USAGE row.

    Raises:
        InsufficientBalance: balance < cost. Nothing is written.
        AccountDisabled:     the account is soft-disabled.
    """
    validate_account_id(account_id)
    if cost <= 0:
        raise ValueError("cost must be positive")

    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        row = await _apply_delta(
            session,
            account_id,
            used=cost,
            min_balance=cost,
            require_active=True,
        )
        if row is None:
            current = await _read_snapshot(session, account_id)
            if not current.is_active:
                raise AccountDisabled(account_id)
            raise InsufficientBalance(required=cost, available=current.balance)

        receipt = await _append(
            session,
            account_id=account_id,
            kind=TransactionKind.USAGE,
            amount=-cost,
            balance_before=row.balance + cost,
            balance_after=row.balance,
            related_request_id=request_id,
            description=description,
        )

    logger.info(
        "Charged %d credit(s) to %s (request=%s) balance %d -> %d",
        cost, account_id, request_id, receipt.balance_before, receipt.balance_after,
    )
    return receipt


async def record_free(
    session: AsyncSession,
    account_id: str,
    request_id: str | None = None,
    description: str = "",
) -> LedgerReceipt:
    """Append a zero-amount FREE_USAGE row (cache hit, empty exact search)."""
    validate_account_id(account_id)
    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        snapshot = await _read_snapshot(session, account_id, lock=True)
        if not snapshot.is_active:
            raise AccountDisabled(account_id)
        receipt = await _append(
            session,
            account_id=account_id,
            kind=TransactionKind.FREE_USAGE,
            amount=0,
            balance_before=snapshot.balance,
            balance_after=snapshot.balance,
            related_request_id=request_id,
            description=description,
        )
    return receipt


async def _purchase_exists(session: AsyncSession, account_id: str, source_id: str) -> bool:
    existing = await session.execute(
        select(LedgerTransaction.id).where(
            LedgerTransaction.account_id == account_id,
            LedgerTransaction.source_id == source_id,
            LedgerTransaction.kind == TransactionKind.PURCHASE.value,
        )
    )
    return existing.first() is not None


async def credit(
    session: AsyncSession,
    account_id: str,
    amount: int,
    source_id: str,
    description: str = "Credit purchase",
) -> int:
    """
    Add purchased credits. Idempotent per (account_id, source_id).

    A replayed payment confirmation returns the unchanged balance without
    writing anything. A duplicate that slips past the pre-check and is
    caught by the unique index at insert time is a defect and raises
    DuplicatePurchaseError.
    """
    validate_account_id(account_id)
    validate_source_id(source_id)
    if amount <= 0:
        raise ValueError("amount must be positive")

    try:
        async with _ledger_transaction(session):
            await _ensure_account(session, account_id)
            # Lock first: a concurrent replay waits here, then sees the
            # committed PURCHASE below.
            snapshot = await _read_snapshot(session, account_id, lock=True)
            if await _purchase_exists(session, account_id, source_id):
                logger.info(
                    "Payment %s already credited to %s; ignoring replay",
                    source_id, account_id,
                )
                return snapshot.balance

            row = await _apply_delta(
                session, account_id, purchased=amount, mark_purchase=True,
            )
            await _append(
                session,
                account_id=account_id,
                kind=TransactionKind.PURCHASE,
                amount=amount,
                balance_before=row.balance - amount,
                balance_after=row.balance,
                source_id=source_id,
                description=description,
            )
    except IntegrityError as exc:
        found = await _purchase_exists(session, account_id, source_id)
        await session.rollback()
        if found:
            logger.error(
                "Duplicate PURCHASE for source %s on account %s reached insert",
                source_id, account_id,
            )
            raise DuplicatePurchaseError(
                f"payment {source_id} already credited to {account_id}"
            ) from exc
        logger.error("Ledger constraint rejected credit for %s: %s", account_id, exc)
        raise LedgerInvariantError(str(exc.orig)) from exc

    logger.info("Credited %d credit(s) to %s from %s", amount, account_id, source_id)
    return row.balance


async def adjust(
    session: AsyncSession,
    account_id: str,
    signed_amount: int,
    actor: str,
    description: str,
) -> int:
    """
    Manual correction by an operator.

    Raises:
        NegativeBalance: the adjustment would drive the balance below zero.
    """
    validate_account_id(account_id)
    if signed_amount == 0:
        raise ValueError("adjustment amount must not be zero")
    if abs(signed_amount) > settings.MAX_ADJUSTMENT:
        raise ValueError(
            f"adjustment exceeds maximum of {settings.MAX_ADJUSTMENT} credits"
        )
    if not actor:
        raise ValueError("actor is required for manual adjustments")

    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        snapshot = await _read_snapshot(session, account_id, lock=True)
        if snapshot.balance + signed_amount < 0:
            raise NegativeBalance(available=snapshot.balance, requested=signed_amount)

        row = await _apply_delta(
            session,
            account_id,
            purchased=max(signed_amount, 0),
            used=max(-signed_amount, 0),
            min_balance=-signed_amount if signed_amount < 0 else None,
        )
        if row is None:
            current = await _read_snapshot(session, account_id)
            raise NegativeBalance(available=current.balance, requested=signed_amount)

        await _append(
            session,
            account_id=account_id,
            kind=TransactionKind.ADJUSTMENT,
            amount=signed_amount,
            balance_before=row.balance - signed_amount,
            balance_after=row.balance,
            actor=actor,
            description=description,
        )

    logger.info(
        "Adjusted %s by %+d (actor=%s): %s", account_id, signed_amount, actor, description
    )
    return row.balance


async def refund(
    session: AsyncSession,
    account_id: str,
    amount: int,
    request_id: str,
    description: str = "Refund",
) -> int:
    """
    Return credits charged for one search request.

    The refund may not exceed what was charged for that request minus
    earlier refunds.
    """
    validate_account_id(account_id)
    if amount <= 0:
        raise ValueError("amount must be positive")

    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        await _read_snapshot(session, account_id, lock=True)

        totals = await session.execute(
            select(LedgerTransaction.kind, func.coalesce(func.sum(LedgerTransaction.amount), 0))
            .where(
                LedgerTransaction.account_id == account_id,
                LedgerTransaction.related_request_id == request_id,
                LedgerTransaction.kind.in_(
                    [TransactionKind.USAGE.value, TransactionKind.REFUND.value]
                ),
            )
            .group_by(LedgerTransaction.kind)
        )
        by_kind = {kind: int(total) for kind, total in totals.all()}
        charged = -by_kind.get(TransactionKind.USAGE.value, 0)
        refunded = by_kind.get(TransactionKind.REFUND.value, 0)
        if charged == 0:
            raise ValueError(f"No charge recorded for request {request_id}")
        if refunded + amount > charged:
            raise ValueError(
                f"Refund of {amount} exceeds remaining charge "
                f"{charged - refunded} for request {request_id}"
            )

        row = await _apply_delta(session, account_id, purchased=amount)
        await _append(
            session,
            account_id=account_id,
            kind=TransactionKind.REFUND,
            amount=amount,
            balance_before=row.balance - amount,
            balance_after=row.balance,
            related_request_id=request_id,
            description=description,
        )

    logger.info("Refunded %d credit(s) to %s for request %s", amount, account_id, request_id)
    return row.balance


async def history(
    session: AsyncSession,
    account_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[LedgerTransaction]:
    """Ledger rows for one account, newest first. Read-only."""
    validate_account_id(account_id)
    if not 1 <= limit <= MAX_HISTORY_PAGE:
        raise ValueError(f"limit must be between 1 and {MAX_HISTORY_PAGE}")
    if offset < 0:
        raise ValueError("offset must be >= 0")

    stmt = (
        select(LedgerTransaction)
        .where(LedgerTransaction.account_id == account_id)
        .order_by(LedgerTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def reconstruct_balance(session: AsyncSession, account_id: str) -> int:
    """Replay the ledger: the sum of all amounts for the account."""
    validate_account_id(account_id)
    stmt = select(func.coalesce(func.sum(LedgerTransaction.amount), 0)).where(
        LedgerTransaction.account_id == account_id
    )
    return int((await session.execute(stmt)).scalar_one())


async def set_account_active(
    session: AsyncSession,
    account_id: str,
    active: bool,
) -> BalanceSnapshot:
    """Soft-disable or re-enable an account. Balances are untouched."""
    validate_account_id(account_id)
    async with _ledger_transaction(session):
        await _ensure_account(session, account_id)
        await session.execute(
            update(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .values(is_active=active, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        snapshot = await _read_snapshot(session, account_id)
    logger.info("Account %s %s", account_id, "enabled" if active else "disabled")
    return snapshot


async def get_credit_summary(
    session: AsyncSession,
    account_id: str,
    threshold: int | None = None,
) -> CreditSummary:
    """Balance overview plus the ten most recent transactions."""
    threshold = settings.LOW_BALANCE_THRESHOLD if threshold is None else threshold
    snapshot = await get_balance(session, account_id)
    recent = await history(session, account_id, limit=10)
    return CreditSummary(
        account_id=snapshot.account_id,
        balance=snapshot.balance,
        total_purchased=snapshot.total_purchased,
        total_used=snapshot.total_used,
        is_active=snapshot.is_active,
        last_purchase_at=snapshot.last_purchase_at,
        needs_alert=0 < snapshot.balance < threshold,
        recent_transactions=recent,
    )

import asyncio
import random

import pytest
from sqlalchemy import func, select

from lookup_meter.core.errors import (
    AccountDisabled,
    DuplicatePurchaseError,
    InsufficientBalance,
    LedgerInvariantError,
    NegativeBalance,
)
from lookup_meter.models.ledger_transaction import LedgerTransaction, TransactionKind
from lookup_meter.services import ledger


async def _replay_ok(session, account_id: str) -> None:
    """Every row chains from the previous one and totals match the balance row."""
    rows = list(reversed(await ledger.history(session, account_id, limit=500)))
    previous_after = 0
    for row in rows:
        assert row.balance_before == previous_after
        assert row.balance_after == row.balance_before + row.amount
        assert row.balance_after >= 0
        previous_after = row.balance_after

    snapshot = await ledger.get_balance(session, account_id)
    assert snapshot.balance == previous_after
    assert snapshot.balance == snapshot.total_purchased - snapshot.total_used
    assert await ledger.reconstruct_balance(session, account_id) == snapshot.balance


async def test_new_account_starts_at_zero(db_session):
    snapshot = await ledger.get_balance(db_session, "acct-new")

    assert snapshot.balance == 0
    assert snapshot.total_purchased == 0
    assert snapshot.total_used == 0
    assert snapshot.is_active is True


async def test_charge_deducts_and_records_usage(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_first")

    receipt = await ledger.charge(db_session, "acct-1", 2, request_id="req-1")

    assert receipt.kind is TransactionKind.USAGE
    assert receipt.amount == -2
    assert (receipt.balance_before, receipt.balance_after) == (10, 8)
    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.balance, snapshot.total_purchased, snapshot.total_used) == (8, 10, 2)


async def test_charge_insufficient_balance_writes_nothing(db_session):
    await ledger.credit(db_session, "acct-1", 1, "pi_small")

    with pytest.raises(InsufficientBalance) as excinfo:
        await ledger.charge(db_session, "acct-1", 2)

    assert excinfo.value.required == 2
    assert excinfo.value.available == 1
    rows = await ledger.history(db_session, "acct-1")
    assert [row.kind for row in rows] == [TransactionKind.PURCHASE.value]
    assert (await ledger.get_balance(db_session, "acct-1")).balance == 1


async def test_concurrent_charges_for_last_credits(session_factory):
    async with session_factory() as session:
        await ledger.credit(session, "acct-race", 2, "pi_race")

    async def attempt(request_id: str):
        async with session_factory() as session:
            return await ledger.charge(session, "acct-race", 2, request_id=request_id)

    results = await asyncio.gather(
        attempt("req-a"), attempt("req-b"), return_exceptions=True,
    )

    receipts = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(receipts) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientBalance)

    async with session_factory() as session:
        assert (await ledger.get_balance(session, "acct-race")).balance == 0
        await _replay_ok(session, "acct-race")


async def test_record_free_leaves_balance_unchanged(db_session):
    await ledger.credit(db_session, "acct-1", 5, "pi_5")

    receipt = await ledger.record_free(db_session, "acct-1", request_id="req-free")

    assert receipt.kind is TransactionKind.FREE_USAGE
    assert receipt.amount == 0
    assert receipt.balance_before == receipt.balance_after == 5
    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.total_purchased, snapshot.total_used) == (5, 0)


async def test_credit_is_idempotent_per_source(db_session):
    first = await ledger.credit(db_session, "acct-1", 100, "pay_1")
    replay = await ledger.credit(db_session, "acct-1", 100, "pay_1")

    assert first == 100
    assert replay == 100
    count = await db_session.execute(
        select(func.count(LedgerTransaction.id)).where(
            LedgerTransaction.account_id == "acct-1",
            LedgerTransaction.kind == TransactionKind.PURCHASE.value,
        )
    )
    assert count.scalar_one() == 1


async def test_same_source_on_another_account_is_separate(db_session):
    assert await ledger.credit(db_session, "acct-1", 10, "pi_shared") == 10
    assert await ledger.credit(db_session, "acct-2", 10, "pi_shared") == 10


async def test_credit_sets_last_purchase_at(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_time")

    snapshot = await ledger.get_balance(db_session, "acct-1")

    assert snapshot.last_purchase_at is not None


@pytest.mark.parametrize("source_id", ["", "has space", "-leading-dash", "x" * 300])
async def test_credit_rejects_malformed_source_ids(db_session, source_id):
    with pytest.raises(ValueError):
        await ledger.credit(db_session, "acct-1", 10, source_id)


async def test_credit_rejects_non_positive_amount(db_session):
    with pytest.raises(ValueError):
        await ledger.credit(db_session, "acct-1", 0, "pi_zero")


async def test_negative_adjustment_cannot_overdraw(db_session):
    await ledger.credit(db_session, "acct-1", 5, "pi_5")

    with pytest.raises(NegativeBalance):
        await ledger.adjust(db_session, "acct-1", -6, "ops@example.com", "too much")

    assert (await ledger.get_balance(db_session, "acct-1")).balance == 5
    balance = await ledger.adjust(db_session, "acct-1", -5, "ops@example.com", "clawback")
    assert balance == 0


async def test_adjustments_update_the_right_totals(db_session):
    await ledger.adjust(db_session, "acct-1", 7, "ops", "goodwill")
    await ledger.adjust(db_session, "acct-1", -3, "ops", "correction")

    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.balance, snapshot.total_purchased, snapshot.total_used) == (4, 7, 3)
    rows = await ledger.history(db_session, "acct-1")
    assert [row.actor for row in rows] == ["ops", "ops"]


async def test_adjust_validates_input(db_session):
    with pytest.raises(ValueError):
        await ledger.adjust(db_session, "acct-1", 0, "ops", "nothing")
    with pytest.raises(ValueError):
        await ledger.adjust(db_session, "acct-1", 5, "", "no actor")
    with pytest.raises(ValueError):
        await ledger.adjust(db_session, "acct-1", 1_000_000, "ops", "huge")


async def test_refund_bounded_by_charged_amount(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_10")
    await ledger.charge(db_session, "acct-1", 2, request_id="req-1")

    assert await ledger.refund(db_session, "acct-1", 2, "req-1") == 10
    with pytest.raises(ValueError):
        await ledger.refund(db_session, "acct-1", 1, "req-1")
    with pytest.raises(ValueError):
        await ledger.refund(db_session, "acct-1", 1, "req-unknown")

    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.total_purchased, snapshot.total_used) == (12, 2)


async def test_disabled_account_cannot_spend(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_10")
    snapshot = await ledger.set_account_active(db_session, "acct-1", False)
    assert snapshot.is_active is False

    with pytest.raises(AccountDisabled):
        await ledger.charge(db_session, "acct-1", 1)
    with pytest.raises(AccountDisabled):
        await ledger.record_free(db_session, "acct-1")

    await ledger.set_account_active(db_session, "acct-1", True)
    receipt = await ledger.charge(db_session, "acct-1", 1)
    assert receipt.balance_after == 9


async def test_ledger_rows_are_append_only(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_10")
    entry = (await ledger.history(db_session, "acct-1"))[0]

    entry.amount = 99
    with pytest.raises(LedgerInvariantError):
        await db_session.flush()
    await db_session.rollback()


async def test_concurrent_replays_of_one_payment_credit_once(session_factory):
    async def deliver():
        async with session_factory() as session:
            return await ledger.credit(session, "acct-1", 25, "pi_webhook_retry")

    results = await asyncio.gather(deliver(), deliver())

    assert results == [25, 25]
    async with session_factory() as session:
        snapshot = await ledger.get_balance(session, "acct-1")
        assert (snapshot.balance, snapshot.total_purchased) == (25, 25)
        assert len(await ledger.history(session, "acct-1")) == 1


async def test_bad_arithmetic_is_refused_and_rolled_back(db_session, monkeypatch):
    await ledger.credit(db_session, "acct-1", 10, "pi_10")
    original_append = ledger._append

    async def skewed_append(session, **kwargs):
        kwargs["balance_after"] += 1
        return await original_append(session, **kwargs)

    monkeypatch.setattr(ledger, "_append", skewed_append)
    with pytest.raises(LedgerInvariantError):
        await ledger.charge(db_session, "acct-1", 2, request_id="req-skew")
    monkeypatch.undo()

    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.balance, snapshot.total_purchased, snapshot.total_used) == (10, 10, 0)
    rows = await ledger.history(db_session, "acct-1")
    assert [row.kind for row in rows] == [TransactionKind.PURCHASE.value]
    await _replay_ok(db_session, "acct-1")


async def test_duplicate_purchase_caught_at_insert(db_session, monkeypatch):
    await ledger.credit(db_session, "acct-1", 10, "pi_dup")
    original_exists = ledger._purchase_exists
    checks = []

    async def miss_first_check(session, account_id, source_id):
        checks.append(source_id)
        if len(checks) == 1:
            return False
        return await original_exists(session, account_id, source_id)

    monkeypatch.setattr(ledger, "_purchase_exists", miss_first_check)
    with pytest.raises(DuplicatePurchaseError):
        await ledger.credit(db_session, "acct-1", 10, "pi_dup")
    monkeypatch.undo()

    purchases = await db_session.execute(
        select(func.count(LedgerTransaction.id)).where(
            LedgerTransaction.account_id == "acct-1",
            LedgerTransaction.kind == TransactionKind.PURCHASE.value,
        )
    )
    assert purchases.scalar_one() == 1
    snapshot = await ledger.get_balance(db_session, "acct-1")
    assert (snapshot.balance, snapshot.total_purchased) == (10, 10)


async def test_history_newest_first_with_paging(db_session):
    await ledger.credit(db_session, "acct-1", 10, "pi_10")
    for i in range(3):
        await ledger.charge(db_session, "acct-1", 1, request_id=f"req-{i}")

    page = await ledger.history(db_session, "acct-1", limit=2)
    rest = await ledger.history(db_session, "acct-1", limit=2, offset=2)

    assert [row.related_request_id for row in page] == ["req-2", "req-1"]
    assert [row.kind for row in rest] == [TransactionKind.USAGE.value, TransactionKind.PURCHASE.value]
    with pytest.raises(ValueError):
        await ledger.history(db_session, "acct-1", limit=0)


async def test_credit_summary_flags_low_balance(db_session):
    await ledger.credit(db_session, "acct-1", 5, "pi_5")

    summary = await ledger.get_credit_summary(db_session, "acct-1")

    assert summary.balance == 5
    assert summary.needs_alert is True
    assert len(summary.recent_transactions) == 1

    empty = await ledger.get_credit_summary(db_session, "acct-empty")
    assert empty.needs_alert is False


async def test_malformed_account_id_rejected(db_session):
    with pytest.raises(ValueError):
        await ledger.get_balance(db_session, "has space")
    with pytest.raises(ValueError):
        await ledger.charge(db_session, "", 1)


async def test_random_operation_sequence_keeps_ledger_consistent(db_session):
    rng = random.Random(20261017)
    accounts = ["acct-a", "acct-b"]
    charged_requests: dict[str, list[str]] = {a: [] for a in accounts}

    for step in range(150):
        account = rng.choice(accounts)
        op = rng.choice(["credit", "charge", "free", "adjust", "refund"])
        try:
            if op == "credit":
                await ledger.credit(db_session, account, rng.randint(1, 20), f"pi_{step}")
            elif op == "charge":
                request_id = f"req-{step}"
                await ledger.charge(db_session, account, rng.choice([1, 2]), request_id=request_id)
                charged_requests[account].append(request_id)
            elif op == "free":
                await ledger.record_free(db_session, account, request_id=f"req-{step}")
            elif op == "adjust":
                await ledger.adjust(db_session, account, rng.choice([-5, -1, 1, 5]), "ops", "fuzz")
            elif op == "refund" and charged_requests[account]:
                await ledger.refund(db_session, account, 1, rng.choice(charged_requests[account]))
        except (InsufficientBalance, NegativeBalance):
            pass
        except ValueError:
            # Refund already used up for that request.
            assert op == "refund"

    for account in accounts:
        await _replay_ok(db_session, account)

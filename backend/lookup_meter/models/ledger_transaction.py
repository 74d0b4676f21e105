"""
SQLAlchemy model for the `ledger_transactions` table.

Each row is one balance-affecting (or balance-neutral) metering event —
treated as a financial record, not a throwaway log entry.

Design notes:
  • Append-only. Rows are never updated or deleted; the ORM hooks at the
    bottom of this module refuse both. The ledger is the source of truth
    for balance reconstruction and audit.
  • id is an autoincrement integer so that, per account, id order is
    commit order (the balance_after sequence must replay exactly).
  • source_id is an opaque string (Stripe "pi_…", manual "MANUAL_ADMIN_…").
    It is never a numeric foreign key.
  • A partial unique index on (account_id, source_id) for PURCHASE rows
    makes payment confirmations idempotent.
"""

import datetime
import enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from lookup_meter.core.database import Base
from lookup_meter.core.errors import LedgerInvariantError
from lookup_meter.models.account_balance import utcnow


class TransactionKind(str, enum.Enum):
    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    FREE_USAGE = "FREE_USAGE"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class LedgerTransaction(Base):
    """One immutable ledger entry."""

    __tablename__ = "ledger_transactions"

    # ── Primary key ─────────────────────────────────────────
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    account_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("account_balances.account_id", ondelete="RESTRICT"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    # ── Amounts ─────────────────────────────────────────────
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Links ───────────────────────────────────────────────
    related_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    # ── Table-level constraints ─────────────────────────────
    __table_args__ = (
        CheckConstraint("balance_before >= 0", name="ck_ledger_before_non_neg"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_after_non_neg"),
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="ck_ledger_arithmetic",
        ),
        CheckConstraint(
            "kind IN ('PURCHASE', 'USAGE', 'FREE_USAGE', 'REFUND', 'ADJUSTMENT')",
            name="ck_ledger_kind_valid",
        ),
        CheckConstraint(
            "(kind = 'USAGE' AND amount < 0)"
            " OR (kind = 'FREE_USAGE' AND amount = 0)"
            " OR (kind IN ('PURCHASE', 'REFUND') AND amount > 0)"
            " OR (kind = 'ADJUSTMENT' AND amount <> 0)",
            name="ck_ledger_amount_sign",
        ),
        Index("ix_ledger_transactions_account_id", "account_id", "id"),
        Index("ix_ledger_transactions_request_id", "related_request_id"),
        Index(
            "uq_ledger_purchase_source",
            "account_id",
            "source_id",
            unique=True,
            postgresql_where=text("kind = 'PURCHASE'"),
            sqlite_where=text("kind = 'PURCHASE'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction id={self.id} account={self.account_id!r} "
            f"kind={self.kind} amount={self.amount} "
            f"{self.balance_before}->{self.balance_after}>"
        )


# ── Append-only guard ───────────────────────────────────────
@event.listens_for(LedgerTransaction, "before_update")
def _refuse_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise LedgerInvariantError(
        f"ledger_transactions row {target.id} is append-only and cannot be updated"
    )


@event.listens_for(LedgerTransaction, "before_delete")
def _refuse_delete(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise LedgerInvariantError(
        f"ledger_transactions row {target.id} is append-only and cannot be deleted"
    )

"""
Account balance model — one row per billable account.

Invariants enforced at the storage layer (second line of defence behind
services/ledger.py):
  • balance, total_purchased, total_used are never negative.
  • balance = total_purchased - total_used, always.

Rows are created lazily with zero balance on first reference and are
never deleted — `is_active` is the soft-disable switch.
"""

import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from lookup_meter.core.database import Base


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class AccountBalance(Base):
    """Current credit balance of one account."""

    __tablename__ = "account_balances"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    balance: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    total_purchased: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    total_used: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="1",
    )

    last_purchase_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balance_non_neg"),
        CheckConstraint("total_purchased >= 0", name="ck_account_purchased_non_neg"),
        CheckConstraint("total_used >= 0", name="ck_account_used_non_neg"),
        CheckConstraint(
            "balance = total_purchased - total_used",
            name="ck_account_balance_consistent",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountBalance account={self.account_id!r} balance={self.balance} "
            f"purchased={self.total_purchased} used={self.total_used}>"
        )

"""create account_balances and ledger_transactions tables

Revision ID: 0001
Revises: 
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "account_balances",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_purchased", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("last_purchase_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("account_id"),
        sa.CheckConstraint("balance >= 0", name="ck_account_balance_non_neg"),
        sa.CheckConstraint("total_purchased >= 0", name="ck_account_purchased_non_neg"),
        sa.CheckConstraint("total_used >= 0", name="ck_account_used_non_neg"),
        sa.CheckConstraint(
            "balance = total_purchased - total_used",
            name="ck_account_balance_consistent",
        ),
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("related_request_id", sa.String(128), nullable=True),
        sa.Column("source_id", sa.String(255), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["account_balances.account_id"],
            ondelete="RESTRICT",
        ),
        sa.CheckConstraint("balance_before >= 0", name="ck_ledger_before_non_neg"),
        sa.CheckConstraint("balance_after >= 0", name="ck_ledger_after_non_neg"),
        sa.CheckConstraint(
            "balance_after = balance_before + amount",
            name="ck_ledger_arithmetic",
        ),
        sa.CheckConstraint(
            "kind IN ('PURCHASE', 'USAGE', 'FREE_USAGE', 'REFUND', 'ADJUSTMENT')",
            name="ck_ledger_kind_valid",
        ),
        sa.CheckConstraint(
            "(kind = 'USAGE' AND amount < 0)"
            " OR (kind = 'FREE_USAGE' AND amount = 0)"
            " OR (kind IN ('PURCHASE', 'REFUND') AND amount > 0)"
            " OR (kind = 'ADJUSTMENT' AND amount <> 0)",
            name="ck_ledger_amount_sign",
        ),
    )

    op.create_index(
        "ix_ledger_transactions_account_id",
        "ledger_transactions",
        ["account_id", "id"],
    )
    op.create_index(
        "ix_ledger_transactions_request_id",
        "ledger_transactions",
        ["related_request_id"],
    )
    # Payment confirmations are idempotent per (account, source)
    op.create_index(
        "uq_ledger_purchase_source",
        "ledger_transactions",
        ["account_id", "source_id"],
        unique=True,
        postgresql_where=sa.text("kind = 'PURCHASE'"),
    )

    # Append-only at the database level too
    op.execute(
        """
        CREATE OR REPLACE FUNCTION ledger_transactions_append_only()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_transactions_append_only
        BEFORE UPDATE OR DELETE ON ledger_transactions
        FOR EACH ROW EXECUTE FUNCTION ledger_transactions_append_only();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_transactions_append_only ON ledger_transactions")
    op.execute("DROP FUNCTION IF EXISTS ledger_transactions_append_only()")
    op.drop_index("uq_ledger_purchase_source", table_name="ledger_transactions")
    op.drop_index("ix_ledger_transactions_request_id", table_name="ledger_transactions")
    op.drop_index("ix_ledger_transactions_account_id", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_table("account_balances")

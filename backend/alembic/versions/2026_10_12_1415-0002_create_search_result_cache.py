"""create search_result_cache table

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "search_result_cache",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("normalized_term", sa.String(500), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("result_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "last_accessed_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("access_count", sa.Integer(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "normalized_term", "mode",
            name="uq_search_cache_key",
        ),
        sa.CheckConstraint(
            "status IN ('success', 'no_match')",
            name="ck_search_cache_status_valid",
        ),
        sa.CheckConstraint(
            "mode IN ('exact', 'fuzzy')",
            name="ck_search_cache_mode_valid",
        ),
        sa.CheckConstraint("result_count >= 0", name="ck_search_cache_count_non_neg"),
        sa.CheckConstraint("access_count >= 0", name="ck_search_cache_access_non_neg"),
    )

    # Eviction scans by last access
    op.create_index(
        "ix_search_result_cache_last_accessed",
        "search_result_cache",
        ["last_accessed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_search_result_cache_last_accessed", table_name="search_result_cache")
    op.drop_table("search_result_cache")

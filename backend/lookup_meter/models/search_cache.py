"""
Search result cache model — prior lookups per (account, term, mode).

A repeat search for the same normalized term in the same mode is served
from here for free, without a second external call or a second charge.

Design notes:
  • UNIQUE(account_id, normalized_term, mode) — one entry per key tuple.
    mode is part of the key: exact and fuzzy results are not fungible.
  • payload_json keeps the exact JSON text stored on the first miss so a
    hit returns the payload bit-for-bit (JSONB would reorder keys).
  • Only definitive outcomes are cached: status is 'success' or
    'no_match'. Transient upstream errors never reach this table.
  • access_count starts at 0 and is bumped on every hit.
"""

import datetime
import uuid

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from lookup_meter.core.database import Base
from lookup_meter.models.account_balance import utcnow


class SearchCacheEntry(Base):
    """One cached lookup outcome."""

    __tablename__ = "search_result_cache"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # ── Key ─────────────────────────────────────────────────
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    normalized_term: Mapped[str] = mapped_column(String(500), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)

    # ── Value ───────────────────────────────────────────────
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    result_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    # ── Access tracking ─────────────────────────────────────
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    last_accessed_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    access_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id", "normalized_term", "mode",
            name="uq_search_cache_key",
        ),
        CheckConstraint(
            "status IN ('success', 'no_match')",
            name="ck_search_cache_status_valid",
        ),
        CheckConstraint(
            "mode IN ('exact', 'fuzzy')",
            name="ck_search_cache_mode_valid",
        ),
        CheckConstraint("result_count >= 0", name="ck_search_cache_count_non_neg"),
        CheckConstraint("access_count >= 0", name="ck_search_cache_access_non_neg"),
        Index("ix_search_result_cache_last_accessed", "last_accessed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SearchCacheEntry account={self.account_id!r} "
            f"term={self.normalized_term!r} mode={self.mode} "
            f"status={self.status} hits={self.access_count}>"
        )

"""
Duplicate-search result cache.

Key: (account_id, normalized_term, mode). Value: the definitive outcome of
a previous external lookup, stored as the exact JSON text returned then.

Design decisions:
  • Cache scope is per account. Two accounts searching the same term each
    pay once; mode is part of the key because exact and fuzzy results
    differ in content and price.
  • Only 'success' and 'no_match' are cacheable. An 'error' outcome is
    rejected with ValueError so a transient upstream failure can never be
    served back as a free hit.
  • First write wins by default (ON CONFLICT DO NOTHING). Setting
    CACHE_OVERWRITE_ON_STORE=true refreshes the entry instead.
  • A hit bumps access_count / last_accessed_at in the same UPDATE that
    reads it back, so concurrent hits never lose increments.
"""

from __future__ import annotations

import datetime
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.core.config import settings
from lookup_meter.core.database import dialect_insert
from lookup_meter.models.account_balance import utcnow
from lookup_meter.models.search_cache import SearchCacheEntry
from lookup_meter.schemas.search import (
    CachedMatch,
    CachedNoMatch,
    LookupStatus,
    SearchMode,
    cached_search_adapter,
)

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["account_id", "normalized_term", "mode"]


@dataclass(frozen=True, slots=True)
class CacheStats:
    account_id: str | None
    total_entries: int
    total_hits: int
    last_accessed_at: datetime.datetime | None


def normalize_term(term: str) -> str:
    """Case- and surrounding-whitespace-insensitive cache key."""
    normalized = term.strip().lower()
    if not normalized:
        raise ValueError("search term must not be empty")
    return normalized


def encode_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _key_filter(account_id: str, normalized: str, mode: SearchMode):
    return (
        SearchCacheEntry.account_id == account_id,
        SearchCacheEntry.normalized_term == normalized,
        SearchCacheEntry.mode == mode.value,
    )


async def lookup(
    session: AsyncSession,
    account_id: str,
    term: str,
    mode: SearchMode | str,
) -> CachedMatch | CachedNoMatch | None:
    """
    Return the cached outcome for this key, or None on a miss.

    A hit increments access_count and bumps last_accessed_at. With
    CACHE_TTL_SECONDS set, an entry created before the TTL is deleted and
    reported as a miss.
    """
    normalized = normalize_term(term)
    mode = SearchMode(mode)
    key = _key_filter(account_id, normalized, mode)

    try:
        if settings.CACHE_TTL_SECONDS is not None:
            cutoff = utcnow() - datetime.timedelta(seconds=settings.CACHE_TTL_SECONDS)
            expired = await session.execute(
                delete(SearchCacheEntry)
                .where(*key, SearchCacheEntry.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            if expired.rowcount:
                logger.info("Expired cache entry for %s / %s (%s)", account_id, normalized, mode.value)

        stmt = (
            update(SearchCacheEntry)
            .where(*key)
            .values(
                access_count=SearchCacheEntry.access_count + 1,
                last_accessed_at=utcnow(),
            )
            .returning(
                SearchCacheEntry.account_id,
                SearchCacheEntry.normalized_term,
                SearchCacheEntry.mode,
                SearchCacheEntry.status,
                SearchCacheEntry.payload_json,
                SearchCacheEntry.result_count,
                SearchCacheEntry.access_count,
                SearchCacheEntry.created_at,
                SearchCacheEntry.last_accessed_at,
            )
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).one_or_none()
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    if row is None:
        return None

    try:
        return cached_search_adapter.validate_python(
            {
                "account_id": row.account_id,
                "normalized_term": row.normalized_term,
                "mode": row.mode,
                "status": row.status,
                "payload": json.loads(row.payload_json),
                "payload_json": row.payload_json,
                "result_count": row.result_count,
                "access_count": row.access_count,
                "created_at": row.created_at,
                "last_accessed_at": row.last_accessed_at,
            }
        )
    except (ValidationError, json.JSONDecodeError) as exc:
        # Unreadable entry: drop it and let the caller fetch fresh.
        logger.warning(
            "Discarding malformed cache entry for %s / %s: %s",
            account_id, normalized, exc,
        )
        await session.execute(delete(SearchCacheEntry).where(*key))
        await session.commit()
        return None


async def store(
    session: AsyncSession,
    account_id: str,
    term: str,
    mode: SearchMode | str,
    payload: Any,
    status: LookupStatus | str,
    result_count: int,
) -> bool:
    """
    Record a definitive lookup outcome.

    Returns True when a row was written (inserted or refreshed), False when
    an existing entry was kept.
    """
    normalized = normalize_term(term)
    mode = SearchMode(mode)
    status = LookupStatus(status)
    if status is LookupStatus.ERROR:
        raise ValueError("transient lookup errors are never cached")
    if status is LookupStatus.NO_MATCH and result_count != 0:
        raise ValueError("a no_match outcome must have result_count 0")
    if status is LookupStatus.SUCCESS and result_count < 1:
        raise ValueError("a success outcome must have result_count >= 1")

    payload_json = encode_payload(payload)
    now = utcnow()
    stmt = dialect_insert(session, SearchCacheEntry).values(
        id=uuid.uuid4(),
        account_id=account_id,
        normalized_term=normalized,
        mode=mode.value,
        status=status.value,
        payload_json=payload_json,
        result_count=result_count,
        access_count=0,
        created_at=now,
        last_accessed_at=now,
    )
    if settings.CACHE_OVERWRITE_ON_STORE:
        stmt = stmt.on_conflict_do_update(
            index_elements=_KEY_COLUMNS,
            set_={
                "status": status.value,
                "payload_json": payload_json,
                "result_count": result_count,
                "created_at": now,
                "last_accessed_at": now,
            },
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=_KEY_COLUMNS)

    try:
        result = await session.execute(stmt)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    written = result.rowcount == 1
    logger.debug(
        "Cache store %s / %s (%s) status=%s written=%s",
        account_id, normalized, mode.value, status.value, written,
    )
    return written


async def evict_older_than(session: AsyncSession, older_than: datetime.timedelta) -> int:
    """Delete entries not accessed within `older_than`. Operator-only."""
    if older_than <= datetime.timedelta(0):
        raise ValueError("older_than must be positive")

    cutoff = utcnow() - older_than
    try:
        result = await session.execute(
            delete(SearchCacheEntry)
            .where(SearchCacheEntry.last_accessed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    deleted = result.rowcount or 0
    logger.info("Evicted %d cache entries idle since %s", deleted, cutoff.isoformat())
    return deleted


async def get_cache_stats(
    session: AsyncSession,
    account_id: str | None = None,
) -> CacheStats:
    stmt = select(
        func.count(SearchCacheEntry.id),
        func.coalesce(func.sum(SearchCacheEntry.access_count), 0),
        func.max(SearchCacheEntry.last_accessed_at),
    )
    if account_id is not None:
        stmt = stmt.where(SearchCacheEntry.account_id == account_id)

    entries, hits, last_accessed = (await session.execute(stmt)).one()
    return CacheStats(
        account_id=account_id,
        total_entries=int(entries),
        total_hits=int(hits),
        last_accessed_at=last_accessed,
    )

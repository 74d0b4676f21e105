import datetime

import pytest

from lookup_meter.core.config import settings
from lookup_meter.models.account_balance import utcnow
from lookup_meter.schemas.search import CachedMatch, CachedNoMatch, SearchMode
from lookup_meter.services import search_cache

USERS = [{"requestedUsername": "Builderman", "id": 156, "name": "builderman", "displayName": "Builderman"}]


def test_normalize_term_strips_and_lowercases():
    assert search_cache.normalize_term("  BuilderMan ") == "builderman"
    with pytest.raises(ValueError):
        search_cache.normalize_term("   ")


async def test_miss_returns_none(db_session):
    assert await search_cache.lookup(db_session, "acct-1", "nobody", SearchMode.EXACT) is None


async def test_store_then_hit_returns_payload_unchanged(db_session):
    await search_cache.store(
        db_session, "acct-1", "Builderman", SearchMode.EXACT, USERS, "success", 1,
    )

    hit = await search_cache.lookup(db_session, "acct-1", "builderman ", "exact")

    assert isinstance(hit, CachedMatch)
    assert hit.payload == USERS
    assert hit.payload_json == search_cache.encode_payload(USERS)
    assert hit.result_count == 1
    assert hit.access_count == 1


async def test_access_count_increments_per_hit(db_session):
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)

    for expected in (1, 2, 3):
        hit = await search_cache.lookup(db_session, "acct-1", "ROBLOX", "fuzzy")
        assert hit.access_count == expected


async def test_mode_and_account_are_part_of_the_key(db_session):
    await search_cache.store(db_session, "acct-1", "roblox", "exact", USERS, "success", 1)

    assert await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy") is None
    assert await search_cache.lookup(db_session, "acct-2", "roblox", "exact") is None


async def test_no_match_is_cached(db_session):
    await search_cache.store(db_session, "acct-1", "zzqqxx", "exact", [], "no_match", 0)

    hit = await search_cache.lookup(db_session, "acct-1", "zzqqxx", "exact")

    assert isinstance(hit, CachedNoMatch)
    assert hit.payload == []
    assert hit.result_count == 0


async def test_error_status_is_never_cached(db_session):
    with pytest.raises(ValueError):
        await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", None, "error", 0)

    assert await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy") is None


async def test_inconsistent_counts_rejected(db_session):
    with pytest.raises(ValueError):
        await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "no_match", 1)
    with pytest.raises(ValueError):
        await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", [], "success", 0)


async def test_first_write_wins_by_default(db_session):
    first = await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)
    second = await search_cache.store(
        db_session, "acct-1", "Roblox", "fuzzy", [{"id": 2}, {"id": 3}], "success", 2,
    )

    assert first is True
    assert second is False
    hit = await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy")
    assert hit.payload == USERS


async def test_overwrite_mode_refreshes_entry(db_session, monkeypatch):
    monkeypatch.setattr(settings, "CACHE_OVERWRITE_ON_STORE", True)
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", [{"id": 2}, {"id": 3}], "success", 2)

    hit = await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy")

    assert hit.payload == [{"id": 2}, {"id": 3}]
    assert hit.result_count == 2


async def test_ttl_expires_old_entries(db_session, monkeypatch):
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)
    monkeypatch.setattr(settings, "CACHE_TTL_SECONDS", 3600)

    assert await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy") is not None

    later = utcnow() + datetime.timedelta(hours=2)
    monkeypatch.setattr(search_cache, "utcnow", lambda: later)
    assert await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy") is None
    stats = await search_cache.get_cache_stats(db_session, "acct-1")
    assert stats.total_entries == 0


async def test_entries_never_expire_without_ttl(db_session, monkeypatch):
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)

    later = utcnow() + datetime.timedelta(days=365)
    monkeypatch.setattr(search_cache, "utcnow", lambda: later)

    assert await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy") is not None


async def test_evict_older_than_uses_last_access(db_session, monkeypatch):
    await search_cache.store(db_session, "acct-1", "old", "fuzzy", USERS, "success", 1)
    await search_cache.store(db_session, "acct-1", "fresh", "fuzzy", USERS, "success", 1)

    # "fresh" is read 40 days later; "old" is not touched again.
    later = utcnow() + datetime.timedelta(days=40)
    monkeypatch.setattr(search_cache, "utcnow", lambda: later)
    await search_cache.lookup(db_session, "acct-1", "fresh", "fuzzy")

    deleted = await search_cache.evict_older_than(db_session, datetime.timedelta(days=30))

    assert deleted == 1
    assert await search_cache.lookup(db_session, "acct-1", "old", "fuzzy") is None
    assert await search_cache.lookup(db_session, "acct-1", "fresh", "fuzzy") is not None


async def test_evict_requires_positive_age(db_session):
    with pytest.raises(ValueError):
        await search_cache.evict_older_than(db_session, datetime.timedelta(0))


async def test_cache_stats(db_session):
    await search_cache.store(db_session, "acct-1", "roblox", "fuzzy", USERS, "success", 1)
    await search_cache.store(db_session, "acct-2", "roblox", "fuzzy", USERS, "success", 1)
    await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy")
    await search_cache.lookup(db_session, "acct-1", "roblox", "fuzzy")

    overall = await search_cache.get_cache_stats(db_session)
    one = await search_cache.get_cache_stats(db_session, "acct-1")

    assert (overall.total_entries, overall.total_hits) == (2, 2)
    assert (one.total_entries, one.total_hits) == (1, 2)
    assert one.last_accessed_at is not None

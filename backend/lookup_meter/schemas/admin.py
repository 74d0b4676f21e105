"""Pydantic v2 schemas for admin / analytics endpoints."""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field


class CacheStatsOut(BaseModel):
    """Duplicate-search cache statistics (read-only)."""

    model_config = ConfigDict(from_attributes=True)

    account_id: str | None = None
    total_entries: int
    total_hits: int
    last_accessed_at: datetime.datetime | None = None


class EvictRequest(BaseModel):
    """Operator-triggered cache cleanup."""

    model_config = ConfigDict(extra="forbid")

    older_than_days: float = Field(..., gt=0, examples=[30])


class EvictResponse(BaseModel):
    deleted: int


class RateLimitStatusOut(BaseModel):
    """Current window of one anonymous identity."""

    model_config = ConfigDict(from_attributes=True)

    identity: str
    count: int
    limit: int
    remaining: int
    retry_after_seconds: int

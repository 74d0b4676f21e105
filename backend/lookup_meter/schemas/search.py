"""
Pydantic v2 schemas for metered search.

Separation:
  • SearchRequest  — what the CLIENT sends (term + mode only).
  • SearchResponse — what the SERVER returns, including how the request
    was metered (from_cache, free, credits_charged, transaction_id).
  • CachedMatch / CachedNoMatch — the cached payload as a tagged variant
    keyed by `status`, so a cached row with a stale or partial shape
    fails validation instead of producing a malformed response.
"""

from __future__ import annotations

import datetime
import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from lookup_meter.core.config import settings


class SearchMode(str, enum.Enum):
    """Lookup semantics. Different cost, different empty-result policy."""

    EXACT = "exact"
    FUZZY = "fuzzy"


class LookupStatus(str, enum.Enum):
    """Outcome reported by the external lookup."""

    SUCCESS = "success"
    NO_MATCH = "no_match"
    ERROR = "error"


# ── Request schema ──────────────────────────────────────────
class SearchRequest(BaseModel):
    """
    Payload accepted by POST /search.

    extra="forbid" rejects unknown fields (e.g. a client-supplied cost)
    with 422 instead of silently ignoring them.
    """

    model_config = ConfigDict(extra="forbid")

    term: str = Field(
        ...,
        min_length=1,
        max_length=500,
        examples=["Builderman"],
        description="Username or keyword to look up.",
    )
    mode: SearchMode = Field(
        default=SearchMode.FUZZY,
        examples=["exact"],
        description="exact: username match, free when nothing is found. "
        "fuzzy: keyword search, always charged.",
    )

    @field_validator("term")
    @classmethod
    def _term_long_enough(cls, value: str) -> str:
        if len(value.strip()) < settings.MIN_TERM_LENGTH:
            raise ValueError(
                f"term must be at least {settings.MIN_TERM_LENGTH} characters"
            )
        return value


# ── Cached payload variants ─────────────────────────────────
class _CachedBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    normalized_term: str
    mode: SearchMode
    payload: Any
    payload_json: str
    access_count: int = Field(ge=0)
    created_at: datetime.datetime
    last_accessed_at: datetime.datetime


class CachedMatch(_CachedBase):
    """A cached lookup that found at least one account."""

    status: Literal["success"]
    result_count: int = Field(ge=1)


class CachedNoMatch(_CachedBase):
    """A cached definitive no-match."""

    status: Literal["no_match"]
    result_count: Literal[0] = 0


CachedSearch = Annotated[Union[CachedMatch, CachedNoMatch], Field(discriminator="status")]
cached_search_adapter: TypeAdapter[CachedMatch | CachedNoMatch] = TypeAdapter(CachedSearch)


# ── Response schema ─────────────────────────────────────────
class SearchResponse(BaseModel):
    """Search result annotated with its metering outcome."""

    request_id: str
    mode: SearchMode
    status: Literal["success", "no_match"]
    result_count: int
    from_cache: bool
    free: bool
    credits_charged: int
    transaction_id: int | None = None
    balance: int | None = None
    payload: Any

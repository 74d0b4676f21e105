"""
Metering coordinator — the per-request pipeline around a search.

    RATE_CHECK → CACHE_CHECK → BALANCE_CHECK → EXTERNAL_CALL → SETTLE → DONE

  • RATE_CHECK     anonymous callers only; they then skip straight to the
                   external call (no account means no cache and no ledger).
  • CACHE_CHECK    disabled accounts are rejected first; a hit is
                   recorded as FREE_USAGE and served unchanged.
  • BALANCE_CHECK  nominal cost by mode; rejects before any external call.
  • EXTERNAL_CALL  bounded by LOOKUP_TIMEOUT_SECONDS. Timeout or an
                   'error' outcome raises UpstreamUnavailable with nothing
                   written to the ledger or the cache.
  • SETTLE         fuzzy is always charged; exact is charged only when an
                   account was found, otherwise recorded free. The
                   definitive outcome is then cached.

No database transaction is held open across the external call: each
ledger and cache operation commits on its own.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lookup_meter.core.config import settings
from lookup_meter.core.errors import (
    AccountDisabled,
    InsufficientBalance,
    RateLimited,
    UpstreamUnavailable,
)
from lookup_meter.schemas.search import LookupStatus, SearchMode
from lookup_meter.services import ledger, search_cache
from lookup_meter.services.lookup_client import LookupClient, LookupResult
from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


class SearchStage(str, enum.Enum):
    RATE_CHECK = "RATE_CHECK"
    CACHE_CHECK = "CACHE_CHECK"
    BALANCE_CHECK = "BALANCE_CHECK"
    EXTERNAL_CALL = "EXTERNAL_CALL"
    SETTLE = "SETTLE"
    DONE = "DONE"


@dataclass(frozen=True, slots=True)
class SearchCosts:
    exact: int = 1
    fuzzy: int = 2

    @classmethod
    def from_settings(cls) -> SearchCosts:
        return cls(exact=settings.SEARCH_COST_EXACT, fuzzy=settings.SEARCH_COST_FUZZY)

    def for_mode(self, mode: SearchMode) -> int:
        return self.exact if mode is SearchMode.EXACT else self.fuzzy


@dataclass(frozen=True, slots=True)
class SearchCommand:
    """One search request as seen by the coordinator.

    Attributes:
        account_id: Authenticated account, or None for an anonymous caller.
        identity:   Network identity; required when account_id is None.
        request_id: Correlates the ledger row with the request. Supplied by
                    the Idempotency-Key header when the client sends one.
    """

    term: str
    mode: SearchMode
    account_id: str | None = None
    identity: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True, slots=True)
class SearchOutcome:
    request_id: str
    mode: SearchMode
    status: LookupStatus
    result_count: int
    payload: Any
    from_cache: bool
    free: bool
    credits_charged: int
    transaction_id: int | None = None
    balance: int | None = None


class MeteringCoordinator:
    """Decides, per search, whether to serve from cache, charge, or reject."""

    def __init__(
        self,
        lookup_client: LookupClient,
        rate_limiter: SlidingWindowRateLimiter,
        costs: SearchCosts | None = None,
        lookup_timeout_s: float | None = None,
    ) -> None:
        self.lookup_client = lookup_client
        self.rate_limiter = rate_limiter
        self.costs = costs or SearchCosts.from_settings()
        self.lookup_timeout_s = (
            settings.LOOKUP_TIMEOUT_SECONDS if lookup_timeout_s is None else lookup_timeout_s
        )

    async def search(self, session: AsyncSession, command: SearchCommand) -> SearchOutcome:
        mode = SearchMode(command.mode)
        if command.account_id is None:
            return await self._anonymous_search(command, mode)

        account_id = command.account_id

        # ── CACHE_CHECK ─────────────────────────────────────
        self._enter(SearchStage.CACHE_CHECK, command)
        snapshot = await ledger.get_balance(session, account_id)
        if not snapshot.is_active:
            raise AccountDisabled(account_id)
        cached = await search_cache.lookup(session, account_id, command.term, mode)
        if cached is not None:
            receipt = await ledger.record_free(
                session,
                account_id,
                request_id=command.request_id,
                description=f"Cached {mode.value} search: {cached.normalized_term}",
            )
            self._enter(SearchStage.DONE, command)
            return SearchOutcome(
                request_id=command.request_id,
                mode=mode,
                status=LookupStatus(cached.status),
                result_count=cached.result_count,
                payload=cached.payload,
                from_cache=True,
                free=True,
                credits_charged=0,
                transaction_id=receipt.transaction_id,
                balance=receipt.balance_after,
            )

        # ── BALANCE_CHECK ───────────────────────────────────
        self._enter(SearchStage.BALANCE_CHECK, command)
        cost = self.costs.for_mode(mode)
        if snapshot.balance < cost:
            raise InsufficientBalance(required=cost, available=snapshot.balance)

        # ── EXTERNAL_CALL ───────────────────────────────────
        self._enter(SearchStage.EXTERNAL_CALL, command)
        result = await self._call_upstream(command.term, mode)

        # ── SETTLE ──────────────────────────────────────────
        self._enter(SearchStage.SETTLE, command)
        description = f"{mode.value.capitalize()} search: {command.term.strip()}"
        if mode is SearchMode.FUZZY or result.status is LookupStatus.SUCCESS:
            receipt = await ledger.charge(
                session, account_id, cost,
                request_id=command.request_id,
                description=description,
            )
            charged = cost
        else:
            receipt = await ledger.record_free(
                session, account_id,
                request_id=command.request_id,
                description=f"{description} (no match)",
            )
            charged = 0

        try:
            await search_cache.store(
                session, account_id, command.term, mode,
                payload=result.payload,
                status=result.status,
                result_count=result.result_count,
            )
        except SQLAlchemyError:
            # Settled already; the next identical search simply misses.
            logger.exception(
                "Failed to cache %s result for %s (request %s)",
                mode.value, account_id, command.request_id,
            )

        self._enter(SearchStage.DONE, command)
        return SearchOutcome(
            request_id=command.request_id,
            mode=mode,
            status=result.status,
            result_count=result.result_count,
            payload=result.payload,
            from_cache=False,
            free=charged == 0,
            credits_charged=charged,
            transaction_id=receipt.transaction_id,
            balance=receipt.balance_after,
        )

    # ── Helpers ─────────────────────────────────────────────
    async def _anonymous_search(self, command: SearchCommand, mode: SearchMode) -> SearchOutcome:
        if not command.identity:
            raise ValueError("anonymous searches need a network identity")

        self._enter(SearchStage.RATE_CHECK, command)
        decision = self.rate_limiter.admit(command.identity)
        if not decision.allowed:
            raise RateLimited(decision.retry_after_seconds)

        self._enter(SearchStage.EXTERNAL_CALL, command)
        result = await self._call_upstream(command.term, mode)

        self._enter(SearchStage.DONE, command)
        return SearchOutcome(
            request_id=command.request_id,
            mode=mode,
            status=result.status,
            result_count=result.result_count,
            payload=result.payload,
            from_cache=False,
            free=True,
            credits_charged=0,
        )

    async def _call_upstream(self, term: str, mode: SearchMode) -> LookupResult:
        try:
            result = await asyncio.wait_for(
                self.lookup_client.lookup(term, mode),
                timeout=self.lookup_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s lookup timed out after %.1fs", mode.value, self.lookup_timeout_s)
            raise UpstreamUnavailable("Lookup service timed out. Please retry.") from exc

        if result.status is LookupStatus.ERROR:
            logger.warning("%s lookup failed: %s", mode.value, result.detail)
            raise UpstreamUnavailable("Lookup service unavailable. Please retry.")
        return result

    @staticmethod
    def _enter(stage: SearchStage, command: SearchCommand) -> None:
        logger.debug("search %s → %s", command.request_id, stage.value)

"""
Roblox account lookup client.

Wraps the public Roblox users API via httpx:
  • exact → POST /v1/usernames/users  (username match)
  • fuzzy → GET  /v1/users/search     (keyword search)

Every call resolves to a LookupResult; this client never raises for
upstream trouble. 429 / 5xx / transport errors are retried with
exponential backoff and, once retries are exhausted, reported as
status="error". The metering coordinator turns that into
UpstreamUnavailable without charging or caching anything.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from lookup_meter.core.config import settings
from lookup_meter.schemas.search import LookupStatus, SearchMode

logger = logging.getLogger(__name__)

FUZZY_RESULT_LIMIT = 10
_MAX_BACKOFF_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class LookupResult:
    status: LookupStatus
    payload: Any = None
    result_count: int = 0
    detail: str | None = None


class LookupClient(Protocol):
    """Anything the coordinator can call for a fresh lookup."""

    async def lookup(self, term: str, mode: SearchMode) -> LookupResult: ...


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class RobloxLookupClient:
    """httpx-backed LookupClient. One instance per process, closed on shutdown."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        backoff_s: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.LOOKUP_BASE_URL).rstrip("/")
        self.max_retries = settings.LOOKUP_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_s = settings.LOOKUP_RETRY_BACKOFF_SECONDS if backoff_s is None else backoff_s
        timeout = settings.LOOKUP_TIMEOUT_SECONDS if timeout_s is None else timeout_s
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Requests ────────────────────────────────────────────
    def _build_request(self, term: str, mode: SearchMode) -> httpx.Request:
        if mode is SearchMode.EXACT:
            return self._client.build_request(
                "POST",
                f"{self.base_url}/v1/usernames/users",
                json={"usernames": [term], "excludeBannedUsers": False},
            )
        return self._client.build_request(
            "GET",
            f"{self.base_url}/v1/users/search",
            params={"keyword": term, "limit": FUZZY_RESULT_LIMIT},
        )

    def _delay(self, attempt: int) -> float:
        if self.backoff_s <= 0:
            return 0.0
        delay = min(self.backoff_s * (2 ** attempt), _MAX_BACKOFF_SECONDS)
        return delay + random.uniform(0, self.backoff_s / 2)

    async def lookup(self, term: str, mode: SearchMode) -> LookupResult:
        mode = SearchMode(mode)
        term = term.strip()
        last_problem = "no attempt made"

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self._delay(attempt - 1)
                logger.warning(
                    "Retrying %s lookup (attempt %d/%d) in %.2fs: %s",
                    mode.value, attempt + 1, self.max_retries + 1, delay, last_problem,
                )
                await asyncio.sleep(delay)

            try:
                response = await self._client.send(self._build_request(term, mode))
            except httpx.TransportError as exc:
                last_problem = f"{type(exc).__name__}: {exc}"
                continue

            if _is_retryable(response.status_code):
                last_problem = f"HTTP {response.status_code}"
                continue

            if response.status_code != 200:
                logger.error(
                    "Lookup API error: status=%d body=%s",
                    response.status_code,
                    response.text[:500],
                )
                return LookupResult(
                    status=LookupStatus.ERROR, detail=f"HTTP {response.status_code}"
                )

            return self._parse(response, mode)

        logger.error("Lookup failed after %d attempt(s): %s", self.max_retries + 1, last_problem)
        return LookupResult(status=LookupStatus.ERROR, detail=last_problem)

    # ── Parsing ─────────────────────────────────────────────
    @staticmethod
    def _parse(response: httpx.Response, mode: SearchMode) -> LookupResult:
        try:
            data = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Unparseable %s lookup response: %s", mode.value, exc)
            return LookupResult(status=LookupStatus.ERROR, detail="unparseable response")

        if not isinstance(data, list):
            return LookupResult(status=LookupStatus.ERROR, detail="unexpected response shape")
        if not data:
            return LookupResult(status=LookupStatus.NO_MATCH, payload=[], result_count=0)
        return LookupResult(status=LookupStatus.SUCCESS, payload=data, result_count=len(data))

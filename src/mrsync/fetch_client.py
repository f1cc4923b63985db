"""
Paginated, retrying fetch client for the external sources.

Each source is served by a ``PageFetcher``. The client walks pages in order,
retries transient failures of a single page with exponential backoff, caches
every raw page, then applies the relevance filter to the assembled dataset and
caches the filtered result under a full-dataset key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from .cache import NOT_FOUND, RAW, TieredCache, generate_key
from .config import RAW_TTL_SECONDS

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
CLIENT_ERROR = "client_error"
RETRIES_EXHAUSTED = "retries_exhausted"

RelevancePredicate = Callable[[Any, set[str]], bool]


class FetchError(RuntimeError):
    """Raised when fetching from an external source fails."""

    def __init__(self, code: str, message: str, source: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.source = source

    @property
    def retryable(self) -> bool:
        return self.code == TRANSIENT


@dataclass(frozen=True)
class Page:
    records: tuple[Any, ...] = ()
    next_page_token: Any = None
    total_count: int | None = None


class PageFetcher(Protocol):
    """One external source. ``page_token`` is ``None`` for the first page."""

    async def fetch_page(self, params: dict[str, Any]) -> Page:
        ...


class RecordLookup(Protocol):
    async def fetch_one(self, key: str) -> Any | None:
        ...


class IdentitySetProvider(Protocol):
    def current_ids(self) -> set[str]:
        ...


class StaticIdentitySet:
    """Identity set held in memory; ``replace`` swaps it at runtime."""

    def __init__(self, ids: Iterable[Any] = ()):
        self._ids = {str(i) for i in ids}

    def current_ids(self) -> set[str]:
        return set(self._ids)

    def replace(self, ids: Iterable[Any]) -> None:
        self._ids = {str(i) for i in ids}


def raw_tier_name(source: str) -> str:
    return f"raw:{source}"


class SourceFetchClient:
    """Fetches complete datasets from the configured sources."""

    def __init__(
        self,
        cache: TieredCache,
        fetchers: dict[str, PageFetcher],
        identities: IdentitySetProvider | None = None,
        *,
        max_retries: int = 3,
        retry_base: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        relevance: dict[str, RelevancePredicate] | None = None,
        required_params: dict[str, Iterable[str]] | None = None,
        disabled: dict[str, str] | None = None,
        raw_ttl: float = RAW_TTL_SECONDS,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if retry_base < 0:
            raise ValueError("retry_base must be non-negative")

        self._cache = cache
        self._fetchers = dict(fetchers)
        self._identities = identities or StaticIdentitySet()
        self._max_retries = max_retries
        self._retry_base = retry_base
        self._sleep = sleep
        self._relevance = dict(relevance or {})
        self._required_params = {k: tuple(v) for k, v in (required_params or {}).items()}
        self._disabled = dict(disabled or {})

        for source in self._fetchers:
            cache.add_tier(raw_tier_name(source), raw_ttl, kind=RAW)

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None
        self._not_configured: dict[str, str] = {}

    @property
    def sources(self) -> list[str]:
        return list(self._fetchers)

    def _fetcher(self, source: str) -> PageFetcher:
        try:
            return self._fetchers[source]
        except KeyError:
            raise FetchError(CLIENT_ERROR, f"unknown source '{source}'", source) from None

    def _record_failure(self, source: str, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{source}: {exc.__class__.__name__}: {exc}"

    def _record_success(self, source: str) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()
        self._not_configured.pop(source, None)

    def _mark_not_configured(self, source: str, reason: str) -> None:
        self._not_configured[source] = reason
        logger.warning("Source %s not configured: %s; returning empty result", source, reason)

    def not_configured(self) -> dict[str, str]:
        return dict(self._not_configured)

    def _missing_config(self, source: str, base_params: dict[str, Any]) -> str | None:
        missing = [
            name for name in self._required_params.get(source, ()) if not base_params.get(name)
        ]
        if missing:
            return f"missing {', '.join(missing)}"
        return None

    async def _with_retry(
        self,
        source: str,
        label: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        attempt = 0
        while True:
            try:
                return await call()
            except (FetchError, OSError, asyncio.TimeoutError) as exc:
                self._record_failure(source, exc)
                if isinstance(exc, FetchError) and not exc.retryable:
                    raise
                if attempt >= self._max_retries:
                    logger.warning(
                        "Max retries reached for %s %s after %d attempts, aborting",
                        source,
                        label,
                        attempt + 1,
                    )
                    raise FetchError(
                        RETRIES_EXHAUSTED,
                        f"failed to fetch {source} {label} after {self._max_retries} retries: {exc}",
                        source,
                    ) from exc
                delay = self._retry_base * (2**attempt)
                attempt += 1
                logger.warning(
                    "Transient error fetching %s %s (%s), retry %d/%d in %.1fs",
                    source,
                    label,
                    exc,
                    attempt,
                    self._max_retries,
                    delay,
                )
                await self._sleep(delay)

    async def fetch_all(
        self,
        source: str,
        base_params: dict[str, Any] | None = None,
        *,
        bypass_cache: bool = False,
    ) -> list[Any]:
        """Return every relevant record for ``base_params``, across all pages.

        A terminal error on any page aborts the call; no partial data is
        returned or cached under the full-dataset key.
        """
        params = dict(base_params or {})
        fetcher = self._fetcher(source)
        tier = raw_tier_name(source)

        reason = self._disabled.get(source) or self._missing_config(source, params)
        if reason:
            self._mark_not_configured(source, reason)
            return []

        predicate = self._relevance.get(source)
        ids: set[str] = set()
        if predicate is not None:
            ids = self._identities.current_ids()
            if not ids:
                self._mark_not_configured(source, "empty identity set")
                return []

        full_key = generate_key(f"{source}:all", params)
        if not bypass_cache:
            cached = self._cache.get(tier, full_key)
            if cached is not NOT_FOUND:
                logger.info("Using cached full dataset for %s (%d records)", source, len(cached))
                return list(cached)

        records: list[Any] = []
        page_number = 1
        token: Any = None
        while True:
            page_key = generate_key(f"{source}:page", {**params, "page": page_number})
            page = NOT_FOUND if bypass_cache else self._cache.get(tier, page_key)
            if page is NOT_FOUND:
                page_params = {**params, "page_token": token}
                page = await self._with_retry(
                    source,
                    f"page {page_number}",
                    lambda: fetcher.fetch_page(page_params),
                )
                self._cache.set(tier, page_key, page)
                logger.debug(
                    "Fetched %s page %d (%d records)", source, page_number, len(page.records)
                )
            records.extend(page.records)
            if page.next_page_token is None:
                break
            token = page.next_page_token
            page_number += 1

        if predicate is not None:
            relevant = [record for record in records if predicate(record, ids)]
        else:
            relevant = records

        self._cache.set(tier, full_key, tuple(relevant))
        self._record_success(source)
        logger.info(
            "Fetched %d %s records over %d pages, %d relevant",
            len(records),
            source,
            page_number,
            len(relevant),
        )
        return relevant

    async def lookup(self, source: str, key: str, *, bypass_cache: bool = False) -> Any | None:
        """Fetch a single record by key, cached in the source's raw tier."""
        fetcher = self._fetcher(source)
        fetch_one = getattr(fetcher, "fetch_one", None)
        if fetch_one is None:
            raise FetchError(CLIENT_ERROR, f"source '{source}' does not support lookups", source)
        if source in self._disabled:
            self._mark_not_configured(source, self._disabled[source])
            return None

        tier = raw_tier_name(source)
        record_key = generate_key(f"{source}:record", {"key": key})
        if not bypass_cache:
            cached = self._cache.get(tier, record_key)
            if cached is not NOT_FOUND:
                return cached

        record = await self._with_retry(source, f"record {key}", lambda: fetch_one(key))
        self._cache.set(tier, record_key, record)
        return record

    def invalidate_source(self, source: str) -> int:
        self._fetcher(source)
        return self._cache.invalidate_cascade(raw_tier_name(source))

    async def aclose(self) -> None:
        for fetcher in self._fetchers.values():
            close = getattr(fetcher, "aclose", None)
            if close is not None:
                await close()

    def get_health(self) -> dict[str, Any]:
        return {
            "sources": self.sources,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
            "notConfigured": self.not_configured(),
            "maxRetries": self._max_retries,
        }

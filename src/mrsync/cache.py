"""
Tiered in-memory cache with per-tier TTLs and cascading invalidation.

Three kinds of tier exist:

- raw: one per external source, unmodified page responses and filtered full
  datasets, keyed by source + query parameters.
- derived: results computed from raw data, keyed by operation + options.
- client: results handed to the presentation layer, keyed by view query.

Derived and client entries are never tracked against the raw entries they were
built from. Instead, clearing any raw tier clears every derived and client tier.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

RAW = "raw"
DERIVED = "derived"
CLIENT = "client"

CONTROL_FLAGS = frozenset({"bypass_cache", "bypassCache", "skip_cache", "skipCache"})


class _NotFound:
    _instance: _NotFound | None = None

    def __new__(cls) -> _NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND: Any = _NotFound()


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize(v)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if k not in CONTROL_FLAGS
        }
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=repr)
    return value


def generate_key(namespace: str, params: dict[str, Any] | None = None) -> str:
    """Build a deterministic cache key.

    Parameter order never changes the key, and control flags such as
    ``bypass_cache`` are dropped at every nesting level.
    """
    payload = json.dumps(_normalize(params or {}), sort_keys=True, default=str)
    return f"{namespace}:{payload}"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheTier:
    name: str
    default_ttl: float
    kind: str = RAW
    _entries: dict[str, CacheEntry] = field(default_factory=dict, repr=False)
    hits: int = 0
    misses: int = 0

    def __len__(self) -> int:
        return len(self._entries)


class TieredCache:
    """Owner of every cache tier.

    Entries are only reachable through ``get``/``set``/``invalidate``; callers
    never touch a tier's mapping directly.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._tiers: dict[str, CacheTier] = {}

    def add_tier(self, name: str, default_ttl: float, kind: str = RAW) -> CacheTier:
        if kind not in {RAW, DERIVED, CLIENT}:
            raise ValueError(f"unknown tier kind '{kind}'")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        tier = self._tiers.get(name)
        if tier is None:
            tier = CacheTier(name=name, default_ttl=default_ttl, kind=kind)
            self._tiers[name] = tier
            logger.debug("Created cache tier %s (kind=%s, ttl=%ss)", name, kind, default_ttl)
        return tier

    def has_tier(self, name: str) -> bool:
        return name in self._tiers

    def _tier(self, name: str) -> CacheTier:
        try:
            return self._tiers[name]
        except KeyError:
            raise KeyError(f"unknown cache tier '{name}'") from None

    def tiers(self, kind: str | None = None) -> list[str]:
        return [t.name for t in self._tiers.values() if kind is None or t.kind == kind]

    def get(self, tier_name: str, key: str) -> Any:
        tier = self._tier(tier_name)
        entry = tier._entries.get(key)
        if entry is None:
            tier.misses += 1
            logger.debug("Cache miss %s[%s]", tier_name, key)
            return NOT_FOUND

        if entry.is_expired(self._clock()):
            tier._entries.pop(key, None)
            tier.misses += 1
            logger.debug("Cache expired %s[%s]", tier_name, key)
            return NOT_FOUND

        tier.hits += 1
        logger.debug("Cache hit %s[%s]", tier_name, key)
        return entry.value

    def set(self, tier_name: str, key: str, value: Any, ttl: float | None = None) -> CacheEntry:
        tier = self._tier(tier_name)
        now = self._clock()
        effective_ttl = tier.default_ttl if ttl is None else ttl
        entry = CacheEntry(key=key, value=value, created_at=now, expires_at=now + effective_ttl)
        tier._entries[key] = entry
        logger.debug("Cached %s[%s] for %ss", tier_name, key, effective_ttl)
        return entry

    def invalidate(self, tier_name: str, key_prefix: str | None = None) -> int:
        tier = self._tier(tier_name)
        if key_prefix is None:
            removed = len(tier._entries)
            tier._entries.clear()
        else:
            doomed = [k for k in tier._entries if k.startswith(key_prefix)]
            for key in doomed:
                del tier._entries[key]
            removed = len(doomed)
        if removed:
            logger.info(
                "Invalidated %d entries in %s%s",
                removed,
                tier_name,
                f" (prefix {key_prefix!r})" if key_prefix else "",
            )
        return removed

    def invalidate_cascade(self, tier_name: str, key_prefix: str | None = None) -> int:
        """Invalidate a tier and everything that may have been built from it.

        Raw tiers cascade into all derived and client tiers; derived tiers
        cascade into client tiers. The downstream tiers are cleared whole.
        """
        tier = self._tier(tier_name)
        removed = self.invalidate(tier_name, key_prefix)
        downstream: tuple[str, ...]
        if tier.kind == RAW:
            downstream = (DERIVED, CLIENT)
        elif tier.kind == DERIVED:
            downstream = (CLIENT,)
        else:
            downstream = ()
        for kind in downstream:
            for name in self.tiers(kind):
                removed += self.invalidate(name)
        return removed

    def invalidate_all(self) -> int:
        removed = 0
        for name in list(self._tiers):
            removed += self.invalidate(name)
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        removed = 0
        for tier in self._tiers.values():
            expired = [k for k, entry in tier._entries.items() if entry.is_expired(now)]
            for key in expired:
                del tier._entries[key]
            removed += len(expired)
        return removed

    def stats(self) -> dict[str, Any]:
        return {
            name: {
                "kind": tier.kind,
                "size": len(tier),
                "ttlSeconds": tier.default_ttl,
                "hits": tier.hits,
                "misses": tier.misses,
                "keys": sorted(tier._entries),
            }
            for name, tier in self._tiers.items()
        }

from __future__ import annotations

import pytest

from fakes import FakeClock
from mrsync.cache import CLIENT, DERIVED, NOT_FOUND, RAW, TieredCache, generate_key


def _cache(clock: FakeClock | None = None) -> TieredCache:
    cache = TieredCache(clock=clock or FakeClock())
    cache.add_tier("raw:gitlab", 900, kind=RAW)
    cache.add_tier("raw:jira", 900, kind=RAW)
    cache.add_tier("derived", 3600, kind=DERIVED)
    cache.add_tier("client", 3600, kind=CLIENT)
    return cache


def test_generate_key_ignores_parameter_order():
    assert generate_key("mrs", {"a": 1, "b": 2}) == generate_key("mrs", {"b": 2, "a": 1})


def test_generate_key_ignores_control_flags_at_any_depth():
    plain = generate_key("mrs", {"a": 1, "nested": {"x": [1, 2]}})
    flagged = generate_key(
        "mrs", {"bypassCache": True, "a": 1, "nested": {"skip_cache": True, "x": [1, 2]}}
    )
    assert plain == flagged


def test_generate_key_distinguishes_namespace_and_values():
    assert generate_key("mrs", {"a": 1}) != generate_key("tickets", {"a": 1})
    assert generate_key("mrs", {"a": 1}) != generate_key("mrs", {"a": 2})
    assert generate_key("mrs", None) == generate_key("mrs", {})


def test_entry_expires_exactly_at_ttl_and_is_removed():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("raw:gitlab", "k", ["value"], ttl=10)

    clock.advance(9.999)
    assert cache.get("raw:gitlab", "k") == ["value"]

    clock.advance(0.001)
    assert cache.get("raw:gitlab", "k") is NOT_FOUND
    assert cache.stats()["raw:gitlab"]["size"] == 0


def test_default_ttl_comes_from_the_tier():
    clock = FakeClock()
    cache = _cache(clock)
    entry = cache.set("raw:gitlab", "k", 1)
    assert entry.expires_at - entry.created_at == 900


def test_set_replaces_the_entry_wholesale():
    cache = _cache()
    cache.set("derived", "k", {"a": 1})
    cache.set("derived", "k", {"b": 2})
    assert cache.get("derived", "k") == {"b": 2}


def test_raw_invalidation_cascades_to_every_derived_and_client_entry():
    cache = _cache()
    cache.set("raw:gitlab", "page", 1)
    cache.set("raw:jira", "page", 2)
    cache.set("derived", "unrelated:key", 3)
    cache.set("client", "view", 4)

    removed = cache.invalidate_cascade("raw:gitlab")

    assert removed == 3
    assert cache.get("raw:gitlab", "page") is NOT_FOUND
    assert cache.get("derived", "unrelated:key") is NOT_FOUND
    assert cache.get("client", "view") is NOT_FOUND
    # Sibling raw tiers are untouched.
    assert cache.get("raw:jira", "page") == 2


def test_derived_invalidation_cascades_only_to_client_tier():
    cache = _cache()
    cache.set("raw:gitlab", "page", 1)
    cache.set("derived", "d", 2)
    cache.set("client", "c", 3)

    cache.invalidate_cascade("derived")

    assert cache.get("raw:gitlab", "page") == 1
    assert cache.get("derived", "d") is NOT_FOUND
    assert cache.get("client", "c") is NOT_FOUND


def test_invalidate_with_prefix_counts_removed_entries():
    cache = _cache()
    cache.set("derived", "derived:tooOldMRs:{}", 1)
    cache.set("derived", "derived:tooOldMRs:{\"x\": 1}", 2)
    cache.set("derived", "derived:baseMRs:{}", 3)

    assert cache.invalidate("derived", "derived:tooOldMRs") == 2
    assert cache.get("derived", "derived:baseMRs:{}") == 3


def test_purge_expired_and_invalidate_all():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set("raw:gitlab", "short", 1, ttl=5)
    cache.set("raw:gitlab", "long", 2, ttl=500)
    clock.advance(10)

    assert cache.purge_expired() == 1
    assert cache.invalidate_all() == 1
    assert all(tier["size"] == 0 for tier in cache.stats().values())


def test_hits_and_misses_are_counted():
    cache = _cache()
    cache.set("derived", "k", 1)
    cache.get("derived", "k")
    cache.get("derived", "missing")

    stats = cache.stats()["derived"]
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_unknown_tier_and_invalid_ttl_raise():
    cache = _cache()
    with pytest.raises(KeyError):
        cache.get("nope", "k")
    with pytest.raises(ValueError):
        cache.add_tier("bad", 0)
    with pytest.raises(ValueError):
        cache.add_tier("bad", 10, kind="other")


def test_not_found_is_distinct_from_cached_none():
    cache = _cache()
    cache.set("raw:jira", "missing-record", None)
    assert cache.get("raw:jira", "missing-record") is None
    assert not NOT_FOUND

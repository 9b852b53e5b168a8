"""Unit tests for the image response cache."""

import re

import pytest

from storybook.util.image_cache import MIN_CAPACITY, MIN_TTL_SECONDS, BoundedTTLCache, CacheEntry, compute_key

TTL = 120.0


def _fill(cache, keys):
  for k in keys:
    cache.set(k, f"data-{k}", "image/png", "m")


class TestComputeKey:

  def test_key_is_sha256_hex(self):
    key = compute_key("gemini-2.5-flash-image", "a castle at dusk")
    assert re.fullmatch(r"[0-9a-f]{64}", key)

  def test_deterministic(self):
    assert compute_key("m", "a dragon") == compute_key("m", "a dragon")

  def test_whitespace_normalised(self):
    keys = {compute_key("m", p) for p in ("a  b", "a b", " a b ", "a\n\tb")}
    assert len(keys) == 1

  def test_absent_model_equals_empty(self):
    assert compute_key(None, "x") == compute_key("", "x")
    assert compute_key("  ", "x") == compute_key(None, "x")

  def test_different_inputs_differ(self):
    assert compute_key("m1", "x") != compute_key("m2", "x")
    assert compute_key("m", "x") != compute_key("m", "y")
    # separator keeps model and prompt apart
    assert compute_key("a", "b c") != compute_key("a b", "c")

  def test_non_string_prompt_rejected(self):
    with pytest.raises(TypeError):
      compute_key("m", None)


class TestConstruction:

  def test_floors_are_enforced(self):
    cache = BoundedTTLCache(0, 0)
    assert cache.capacity == MIN_CAPACITY
    assert cache.ttl == MIN_TTL_SECONDS

  def test_values_above_floor_kept(self):
    cache = BoundedTTLCache(200, 6 * 3600)
    assert cache.capacity == 200
    assert cache.ttl == 6 * 3600


class TestGetSet:

  def test_miss_returns_none(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    assert cache.get("never-set") is None

  def test_set_then_get(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "aGVsbG8=", "image/png", "gemini-2.5-flash-image")

    entry = cache.get("k")
    assert isinstance(entry, CacheEntry)
    assert entry.payload == "aGVsbG8="
    assert entry.content_type == "image/png"
    assert entry.model_id == "gemini-2.5-flash-image"
    assert entry.created_at == clock.now
    assert entry.expires_at == clock.now + TTL

  def test_empty_model_id_allowed(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "p", "image/png")
    assert cache.get("k").model_id == ""

  @pytest.mark.parametrize("payload,content_type", [("", "image/png"), ("p", ""), (None, "image/png"), (b"p", "x")])
  def test_invalid_values_rejected_without_mutation(self, clock, payload, content_type):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "old", "image/png")

    with pytest.raises(ValueError):
      cache.set("k", payload, content_type)

    assert len(cache) == 1
    assert cache.get("k").payload == "old"

  def test_reinsert_refreshes_value_and_expiry(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "v1", "image/png")
    clock.advance(50)
    cache.set("k", "v2", "image/jpeg")

    assert len(cache) == 1
    entry = cache.get("k")
    assert entry.payload == "v2"
    assert entry.content_type == "image/jpeg"
    assert entry.expires_at == clock.now + TTL

    # still live past the first insertion's expiry
    clock.advance(TTL - 10)
    assert cache.get("k") is not None

  def test_reinsert_moves_to_most_recent(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    _fill(cache, [f"k{i}" for i in range(10)])
    cache.set("k0", "again", "image/png")

    cache.set("new", "p", "image/png")
    assert "k0" in cache
    assert "k1" not in cache


class TestExpiry:

  def test_live_just_before_ttl(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "p", "image/png")
    clock.advance(TTL - 0.001)
    assert cache.get("k") is not None

  def test_expired_at_exact_ttl(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "p", "image/png")
    clock.advance(TTL)
    assert cache.get("k") is None

  def test_expired_entry_removed_on_lookup(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("k", "p", "image/png")
    clock.advance(TTL + 0.001)

    assert "k" in cache  # lazy: nothing swept yet
    assert cache.get("k") is None
    assert "k" not in cache
    assert len(cache) == 0
    assert cache.get("k") is None

  def test_set_does_not_purge_expired(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("old", "p", "image/png")
    clock.advance(TTL + 1)
    cache.set("fresh", "p", "image/png")
    assert len(cache) == 2


class TestCapacity:

  def test_size_never_exceeds_capacity(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    keys = [f"k{i}" for i in range(25)]
    for k in keys:
      cache.set(k, "p", "image/png")
      assert len(cache) <= 10

    assert len(cache) == 10
    assert all(k not in cache for k in keys[:15])
    assert all(cache.get(k) is not None for k in keys[15:])

  def test_get_protects_from_eviction(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    keys = [f"k{i}" for i in range(1, 11)]
    _fill(cache, keys)

    cache.get("k1")
    cache.set("k11", "p", "image/png")

    assert cache.get("k1") is not None
    assert cache.get("k2") is None

  def test_expired_lookup_does_not_bump(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    cache.set("stale", "p", "image/png")
    clock.advance(TTL + 1)
    assert cache.get("stale") is None
    _fill(cache, [f"k{i}" for i in range(10)])
    assert len(cache) == 10

  def test_miss_does_not_change_order(self, clock):
    cache = BoundedTTLCache(10, TTL, clock=clock)
    _fill(cache, [f"k{i}" for i in range(10)])
    cache.get("absent")
    cache.set("k10", "p", "image/png")
    assert "k0" not in cache


class TestScenario:

  def test_eviction_then_shared_ttl_expiry(self, clock):
    cache = BoundedTTLCache(MIN_CAPACITY, MIN_TTL_SECONDS, clock=clock)
    t0 = clock.now

    cache.set("a", "payloadA", "image/png")
    clock.advance(1)
    cache.set("b", "payloadB", "image/png")
    for i in range(MIN_CAPACITY - 2):
      clock.advance(1)
      cache.set(f"f{i}", "filler", "image/png")
    clock.advance(1)
    cache.set("c", "payloadC", "image/png")

    assert cache.get("a") is None
    assert cache.get("b").payload == "payloadB"
    assert cache.get("c").payload == "payloadC"

    clock.now = t0 + MIN_TTL_SECONDS + MIN_CAPACITY + 5
    assert cache.get("b") is None
    assert cache.get("c") is None

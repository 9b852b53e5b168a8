# storybook/util/image_cache.py
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from storybook.config import LOG_LEVEL

log = logging.getLogger("image_cache")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[IMG] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

MIN_CAPACITY = 10
MIN_TTL_SECONDS = 60.0

_WS = re.compile(r"\s+")


def compute_key(model_id: Optional[str], prompt: str) -> str:
  """sha256 hex of "<model>::<prompt>", prompt trimmed with whitespace runs collapsed."""
  if not isinstance(prompt, str):
    raise TypeError("prompt must be a string")
  model = (model_id or "").strip()
  normalized = _WS.sub(" ", prompt.strip())
  return hashlib.sha256(f"{model}::{normalized}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
  payload: str
  content_type: str
  model_id: str
  created_at: float
  expires_at: float


class BoundedTTLCache:
  """
  In-memory LRU + TTL map for generated images.

  - capacity and ttl are fixed at construction (clamped to 10 entries / 60s)
  - expiry is lazy: an expired entry is dropped by the get() that finds it
  - set() evicts from the least-recently-used end until size == capacity

  get/set never await, so on a single event loop they need no lock.
  """

  def __init__(self, capacity: int, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
    self._capacity = max(MIN_CAPACITY, int(capacity))
    self._ttl = max(MIN_TTL_SECONDS, float(ttl_seconds))
    self._clock = clock
    self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()

  @property
  def capacity(self) -> int:
    return self._capacity

  @property
  def ttl(self) -> float:
    return self._ttl

  def __len__(self) -> int:
    return len(self._store)

  def __contains__(self, key: object) -> bool:
    return key in self._store

  def get(self, key: str) -> Optional[CacheEntry]:
    entry = self._store.get(key)
    if entry is None:
      return None
    if entry.expires_at <= self._clock():
      del self._store[key]
      log.debug("expired %s", key[:12])
      return None
    self._store.move_to_end(key)
    return entry

  def set(self, key: str, payload: str, content_type: str, model_id: str = "") -> CacheEntry:
    if not isinstance(payload, str) or not payload:
      raise ValueError("payload must be a non-empty string")
    if not isinstance(content_type, str) or not content_type:
      raise ValueError("content_type must be a non-empty string")

    now = self._clock()
    entry = CacheEntry(
      payload=payload,
      content_type=content_type,
      model_id=model_id or "",
      created_at=now,
      expires_at=now + self._ttl,
    )
    # re-insertion refreshes both recency and expiry
    self._store.pop(key, None)
    self._store[key] = entry
    while len(self._store) > self._capacity:
      evicted, _ = self._store.popitem(last=False)
      log.debug("evicted %s (capacity %d)", evicted[:12], self._capacity)
    return entry

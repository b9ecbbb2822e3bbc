"""Read cache for bill views.

Entries live under a key (``bills``, ``bills:42``) and a variant (a normalized
query string, ``summary``, or empty for a single bill). Invalidating a key
drops all of its variants.

Every entry carries a tag taken from the database before the cached body was
read. A read only hits when the caller's current tag matches, so an entry
written from a pre-payment snapshot, or left behind by another worker that
never saw the invalidation, is treated as a miss.

``LocalQueryCache`` (cachetools ``TTLCache``) is the default. When
``REDIS_URL`` is set the cache is shared between workers through redis.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Iterable

import redis
from cachetools import TTLCache

from hospital_erp.core.settings import Settings, settings

logger = logging.getLogger("hospital_erp.cache")

BILL_LIST_KEY = "bills"


def bill_key(bill_id: int) -> str:
    return f"{BILL_LIST_KEY}:{bill_id}"


def bill_cache_keys(bill_id: int) -> tuple[str, ...]:
    """Keys a payment against ``bill_id`` invalidates: every list/summary view and the bill itself."""
    return (BILL_LIST_KEY, bill_key(bill_id))


class QueryCache:
    def get(self, key: str, variant: str = "", *, tag: list[int] | None = None) -> Any | None:
        entry = self._load(key, variant)
        if entry is None or entry.get("tag") != tag:
            return None
        return entry.get("value")

    def set(self, key: str, value: Any, variant: str = "", *, tag: list[int] | None = None) -> None:
        self._store(key, variant, {"tag": tag, "value": value})

    def invalidate(self, *keys: str) -> None:
        if keys:
            self._drop(keys)

    def _load(self, key: str, variant: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _store(self, key: str, variant: str, entry: dict[str, Any]) -> None:
        raise NotImplementedError

    def _drop(self, keys: Iterable[str]) -> None:
        raise NotImplementedError


class LocalQueryCache(QueryCache):
    """Per-process cache bounded by entry count and age."""

    def __init__(
        self,
        *,
        maxsize: int = 1024,
        ttl_seconds: float = 300,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.maxsize = maxsize
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        # cachetools caches are not thread-safe; sync routes run in a threadpool.
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def _load(self, key: str, variant: str) -> dict[str, Any] | None:
        with self._lock:
            return self._entries.get((key, variant))

    def _store(self, key: str, variant: str, entry: dict[str, Any]) -> None:
        with self._lock:
            self._entries[(key, variant)] = entry

    def _drop(self, keys: Iterable[str]) -> None:
        wanted = set(keys)
        with self._lock:
            for cache_key in [k for k in self._entries.keys() if k[0] in wanted]:
                self._entries.pop(cache_key, None)


class RedisQueryCache(QueryCache):
    """Cache shared by every worker: one redis hash per key, one field per variant."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        maxsize: int = 1024,
        ttl_seconds: int = 300,
        prefix: str = "hospital_erp:cache:",
    ) -> None:
        self._client = client
        self.maxsize = maxsize
        self._ttl = int(ttl_seconds)
        self._prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _load(self, key: str, variant: str) -> dict[str, Any] | None:
        try:
            raw = self._client.hget(self._name(key), variant)
        except redis.RedisError as exc:
            logger.warning("Cache read for %s failed: %s", key, exc)
            return None
        if not raw:
            return None
        return json.loads(raw)

    def _store(self, key: str, variant: str, entry: dict[str, Any]) -> None:
        name = self._name(key)
        try:
            if self._client.hlen(name) >= self.maxsize:
                self._client.delete(name)
            with self._client.pipeline() as pipe:
                pipe.hset(name, variant, json.dumps(entry))
                pipe.expire(name, self._ttl)
                pipe.execute()
        except redis.RedisError as exc:
            logger.warning("Cache write for %s failed: %s", key, exc)

    def _drop(self, keys: Iterable[str]) -> None:
        names = [self._name(key) for key in keys]
        try:
            self._client.delete(*names)
        except redis.RedisError as exc:
            # Tagged reads still refuse the old entries; they age out with the TTL.
            logger.warning("Cache invalidation of %s failed: %s", ", ".join(names), exc)


def build_query_cache(config: Settings) -> QueryCache:
    if config.redis_url:
        client = redis.from_url(config.redis_url, decode_responses=True, health_check_interval=30)
        return RedisQueryCache(
            client, maxsize=config.cache_max_entries, ttl_seconds=config.cache_ttl_seconds
        )
    return LocalQueryCache(maxsize=config.cache_max_entries, ttl_seconds=config.cache_ttl_seconds)


_query_cache: QueryCache | None = None


def get_query_cache() -> QueryCache:
    global _query_cache
    if _query_cache is None:
        _query_cache = build_query_cache(settings)
    return _query_cache

# Overview: TTL key-value stores backing transient import sessions.

"""
Two interchangeable backends with the same surface (get / set / update /
delete / clear):

- MemoryTTLStore: process-local, for tests and single-process runs.
- RedisTTLStore: shared across workers; values are JSON, expiry is SETEX.

update(key, fn, ttl) is the only read-modify-write path. fn receives the
current value (None when missing or expired) and returns the value to
store; an exception from fn leaves the stored value untouched.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from typing import Any, Callable

import redis


logger = logging.getLogger(__name__)

Updater = Callable[[Any], Any]


class MemoryTTLStore:
    """
    Process-local key-value store with per-key expiry.

    Values are deep-copied in and out so callers can never mutate stored
    state by accident, matching a serializing store. Expiry is passive:
    an expired key is dropped when it is next read.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Any | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Any | None:
        with self._lock:
            return copy.deepcopy(self._live(key))

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (expires_at, copy.deepcopy(value))

    def update(self, key: str, fn: Updater, ttl: float | None = None) -> Any:
        with self._lock:
            value = fn(copy.deepcopy(self._live(key)))
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (expires_at, copy.deepcopy(value))
            return copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisTTLStore:
    """Redis-backed store; every key lives under ``prefix``."""

    def __init__(self, client: redis.Redis, *, prefix: str = "stockline:", max_retries: int = 10):
        self.client = client
        self.prefix = prefix
        self.max_retries = max_retries

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisTTLStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _write(target, key: str, value: Any, ttl: float | None) -> None:
        raw = json.dumps(value)
        if ttl:
            target.setex(key, int(ttl), raw)
        else:
            target.set(key, raw)

    def get(self, key: str) -> Any | None:
        raw = self.client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._write(self.client, self._key(key), value, ttl)

    def update(self, key: str, fn: Updater, ttl: float | None = None) -> Any:
        """Optimistic WATCH/MULTI loop; fn may run more than once."""
        name = self._key(key)
        with self.client.pipeline() as pipe:
            for _ in range(self.max_retries):
                try:
                    pipe.watch(name)
                    raw = pipe.get(name)
                    value = fn(json.loads(raw) if raw is not None else None)
                    pipe.multi()
                    self._write(pipe, name, value, ttl)
                    pipe.execute()
                    return value
                except redis.WatchError:
                    logger.debug("Concurrent write on %s, retrying update", name)
                    continue
        raise RuntimeError(f"Could not update {key} after {self.max_retries} attempts")

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(self._key(key)))

    def clear(self) -> None:
        for name in self.client.scan_iter(match=f"{self.prefix}*"):
            self.client.delete(name)


def build_kv_store(url: str | None):
    """Redis when a URL is configured, otherwise the in-process store."""
    if url:
        logger.info("Import sessions use Redis at %s", url.split("@")[-1])
        return RedisTTLStore.from_url(url)
    return MemoryTTLStore()

"""
Key-value caches with TTL used for alert deduplication and geofence state.

Both back-ends share one interface: has / get / set / add / delete. ``add``
only writes when the key is absent and reports whether it did.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from fleet_trip_analyzer.core.exceptions import DependencyUnavailable

logger = logging.getLogger(__name__)


class InMemoryDedupCache:
    """Process-local TTL cache. The clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry is not None else default

    def _sweep(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._sweep()
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        with self._lock:
            self._sweep()
            if key in self._entries:
                return False
            self._entries[key] = (value, self._clock() + ttl_seconds)
            return True

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Live entries with absolute expiry times, for persisting between processes."""
        with self._lock:
            self._sweep()
            return {
                key: {'value': value, 'expires_at': expires_at}
                for key, (value, expires_at) in self._entries.items()
            }

    def restore(self, entries: Dict[str, Dict[str, Any]]) -> None:
        """Load entries written by ``snapshot``; already expired ones are dropped."""
        with self._lock:
            for key, entry in entries.items():
                self._entries[key] = (entry['value'], float(entry['expires_at']))
            self._sweep()

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, expires_at in self._entries.values() if expires_at > now)


class RedisDedupCache:
    """TTL cache backed by Redis (SET NX EX). Values are stored as JSON."""

    def __init__(self, client: Optional[redis.Redis] = None,
                 redis_url: str = "redis://localhost:6379/0",
                 key_prefix: str = "fleet_trips:"):
        self.client = client or redis.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def has(self, key: str) -> bool:
        try:
            return bool(self.client.exists(self._key(key)))
        except redis.RedisError as e:
            raise DependencyUnavailable("dedup cache", str(e)) from e

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            raise DependencyUnavailable("dedup cache", str(e)) from e
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            self.client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)))
        except redis.RedisError as e:
            raise DependencyUnavailable("dedup cache", str(e)) from e

    def add(self, key: str, value: Any, ttl_seconds: float) -> bool:
        try:
            created = self.client.set(
                self._key(key), json.dumps(value), ex=max(1, int(ttl_seconds)), nx=True
            )
        except redis.RedisError as e:
            raise DependencyUnavailable("dedup cache", str(e)) from e
        return bool(created)

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except redis.RedisError as e:
            raise DependencyUnavailable("dedup cache", str(e)) from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {str(e)}")
            return False

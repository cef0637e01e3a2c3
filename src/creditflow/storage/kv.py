"""Ephemeral key/value store used for session snapshots.

Two backends share one small interface (get/put/delete/list-by-prefix with
expiration):

- ``memory://`` keeps everything in process, for development and tests
- ``redis://...`` stores keys in Redis with native TTLs
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

import redis

from creditflow.logging_config import get_logger

logger = get_logger(__name__)


class KVStore(ABC):
    """Key/value store with per-key expiration."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def list_keys(self, prefix: str) -> list[tuple[str, datetime | None]]:
        """Return (key, absolute expiration) pairs for live keys under prefix."""
        pass


class MemoryKVStore(KVStore):
    """In-process store; expired keys are dropped lazily on access."""

    def __init__(self):
        self._data: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: datetime) -> tuple[str, datetime] | None:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= now:
            del self._data[key]
            return None
        return item

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._live(key, datetime.utcnow())
            return item[0] if item else None

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, datetime.utcnow() + timedelta(seconds=ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str) -> list[tuple[str, datetime | None]]:
        now = datetime.utcnow()
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            result = []
            for key in keys:
                item = self._live(key, now)
                if item:
                    result.append((key, item[1]))
            return result


class RedisKVStore(KVStore):
    """Redis-backed store."""

    def __init__(self, url: str):
        self.client = redis.Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def list_keys(self, prefix: str) -> list[tuple[str, datetime | None]]:
        now = datetime.utcnow()
        result = []
        for key in self.client.scan_iter(match=f"{prefix}*"):
            ttl = self.client.ttl(key)
            if ttl == -2:
                continue  # Expired between SCAN and TTL
            expires_at = now + timedelta(seconds=ttl) if ttl >= 0 else None
            result.append((key, expires_at))
        return result


def create_kv_store(url: str) -> KVStore:
    """Build a store from a URL (memory:// or redis://)."""
    if url.startswith("memory://"):
        return MemoryKVStore()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisKVStore(url)
    raise ValueError(f"Unsupported KV store URL: {url}")

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from pumpguard.logging import get_logger
from pumpguard.storage.errors import StorageError

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """String key/value storage that is synchronous from the caller's side."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def scoped_key(namespace: Optional[str], key: str) -> str:
    """Prefix ``key`` with a per-client namespace when one is given."""
    return f"{namespace}:{key}" if namespace else key


class MemoryKeyValueStore:
    """Process-local storage; lives exactly as long as the process."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError("value must be a string", {"key": key})
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisKeyValueStore:
    """Redis-backed storage for values that outlive a browsing session.

    Uses a synchronous client so writes complete before the caller moves on
    (no dropped writes on immediate navigation). Keys are namespaced; an
    optional TTL bounds how long abandoned entries linger.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        namespace: str = "pumpguard",
        ttl_seconds: Optional[int] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on it."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise StorageError("redis unreachable", {"error": str(exc)}) from exc

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError("redis read failed", {"key": key, "error": str(exc)}) from exc
        if isinstance(value, bytes):
            value = value.decode()
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value, ex=self.ttl_seconds)
        except RedisError as exc:
            raise StorageError("redis write failed", {"key": key, "error": str(exc)}) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            raise StorageError("redis delete failed", {"key": key, "error": str(exc)}) from exc

    def close(self) -> None:
        try:
            self.client.close()
        except RedisError as exc:
            logger.warning("redis_close_failed", error=str(exc))


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "RedisKeyValueStore", "scoped_key"]

from __future__ import annotations

import json
import time
from typing import Callable, Dict, List, Optional

from pumpguard.logging import get_logger, hash_identity
from pumpguard.storage.errors import StorageError
from pumpguard.storage.kv import KeyValueStore

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_SECONDS = 15 * 60
RATE_LIMIT_PREFIX = "rate_limit_"

# Operations whose windows are keyed per identity
RATE_LIMITED_OPERATIONS = ("login", "forgot_password", "password_reset")


def rate_key(operation: str, identity: str) -> str:
    return f"{operation}_{identity.strip().lower()}"


def _log_context(key: str) -> Dict[str, Optional[str]]:
    """Describe a window for the log without the identity in clear."""
    for operation in RATE_LIMITED_OPERATIONS:
        if key.startswith(f"{operation}_"):
            return {
                "operation": operation,
                "identity_hash": hash_identity(key[len(operation) + 1 :]),
            }
    return {"operation": None, "key_hash": hash_identity(key)}


class RateLimiter:
    """Sliding-window attempt counter kept in durable storage.

    A client-side limiter is a deterrent, not a security boundary: when the
    stored window cannot be read or parsed the attempt is admitted and the
    anomaly is logged.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock

    def _storage_key(self, key: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{key}"

    def _read_window(self, key: str) -> Optional[List[float]]:
        """Return stored timestamps, or None when the entry is unusable."""
        raw = self.storage.get(self._storage_key(key))
        if not raw:
            return []
        attempts = json.loads(raw)
        if not isinstance(attempts, list) or not all(
            isinstance(ts, (int, float)) and not isinstance(ts, bool) for ts in attempts
        ):
            return None
        return [float(ts) for ts in attempts]

    def check(
        self,
        key: str,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> bool:
        """Admit an attempt for ``key`` unless its window is already full."""
        limit = max_attempts if max_attempts is not None else self.max_attempts
        window = window_seconds if window_seconds is not None else self.window_seconds
        now = self._clock()

        try:
            attempts = self._read_window(key)
        except (StorageError, ValueError) as exc:
            logger.warning("rate_limit_store_unreadable", **_log_context(key), error=str(exc))
            return True
        if attempts is None:
            logger.warning("rate_limit_window_corrupt", **_log_context(key))
            return True

        recent = [ts for ts in attempts if now - ts < window]
        if len(recent) >= limit:
            logger.info("rate_limit_exceeded", **_log_context(key), attempts=len(recent), limit=limit)
            return False

        recent.append(now)
        try:
            self.storage.set(self._storage_key(key), json.dumps(recent))
        except StorageError as exc:
            logger.warning("rate_limit_store_unwritable", **_log_context(key), error=exc.message)
        return True

    def clear(self, key: str) -> None:
        try:
            self.storage.delete(self._storage_key(key))
        except StorageError as exc:
            logger.warning("rate_limit_clear_failed", **_log_context(key), error=exc.message)

    def clear_identity(self, identity: str) -> None:
        for operation in RATE_LIMITED_OPERATIONS:
            self.clear(rate_key(operation, identity))


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_WINDOW_SECONDS",
    "RATE_LIMITED_OPERATIONS",
    "RateLimiter",
    "rate_key",
]

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from pumpguard.logging import get_logger
from pumpguard.storage.errors import StorageError
from pumpguard.storage.kv import KeyValueStore

logger = get_logger(__name__)

DEFAULT_MANUAL_LOGOUT_GRACE_SECONDS = 1.0


@dataclass
class ProcessGuards:
    """One-time setup flags owned by the runtime.

    Each flag moves false -> true at most once; ``claim`` reports whether
    the caller is the one that moved it. Only test teardown resets them.
    """

    initialized: bool = False
    listener_active: bool = False
    refresh_installed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    _NAMES = ("initialized", "listener_active", "refresh_installed")

    def claim(self, name: str) -> bool:
        if name not in self._NAMES:
            raise KeyError(name)
        with self._lock:
            if getattr(self, name):
                return False
            setattr(self, name, True)
            return True

    def reset(self) -> None:
        with self._lock:
            for name in self._NAMES:
                setattr(self, name, False)


class ManualLogoutFlag:
    """Marks a user-initiated logout for a short grace period.

    While set, identity-provider notifications are discarded so a logout the
    app caused is never mistaken for an out-of-band session expiry. The
    stored value is the time the flag was raised; once the grace period has
    passed the flag reads as clear and its entry is dropped.
    """

    KEY = "manual_logout"

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        grace_seconds: float = DEFAULT_MANUAL_LOGOUT_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.grace_seconds = grace_seconds
        self._clock = clock
        # Mirrors the stored flag so a storage outage cannot reopen the race
        self._raised_at: Optional[float] = None

    def set(self) -> None:
        now = self._clock()
        self._raised_at = now
        try:
            self.storage.set(self.KEY, repr(now))
        except StorageError as exc:
            logger.warning("manual_logout_flag_write_failed", error=exc.message)

    def _stored_timestamp(self) -> Optional[float]:
        try:
            raw = self.storage.get(self.KEY)
        except StorageError as exc:
            logger.warning("manual_logout_flag_read_failed", error=exc.message)
            return None
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            # Unparseable marker: restamp it so the grace period still runs out
            logger.warning("manual_logout_flag_corrupt", raw=raw[:32])
            if self._raised_at is None:
                self._raised_at = self._clock()
            try:
                self.storage.set(self.KEY, repr(self._raised_at))
            except StorageError as exc:
                logger.warning("manual_logout_flag_write_failed", error=exc.message)
            return self._raised_at

    def is_set(self) -> bool:
        raised_at = self._stored_timestamp()
        if raised_at is None:
            raised_at = self._raised_at
        if raised_at is None:
            return False
        if self._clock() - raised_at >= self.grace_seconds:
            self.clear()
            return False
        return True

    def clear(self) -> None:
        self._raised_at = None
        try:
            self.storage.delete(self.KEY)
        except StorageError as exc:
            logger.warning("manual_logout_flag_clear_failed", error=exc.message)


__all__ = ["DEFAULT_MANUAL_LOGOUT_GRACE_SECONDS", "ManualLogoutFlag", "ProcessGuards"]

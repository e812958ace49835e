"""Background keep-alive for the identity provider's credential.

The scheduler never touches the session record. It refreshes the
credential on installation, every ``interval`` seconds, when the tab
becomes visible again and when the network comes back, but at most once per
debounce window: visibility and online events routinely fire together.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Set

from pumpguard.logging import get_logger
from pumpguard.service.guards import ProcessGuards
from pumpguard.service.identity import IdentityProvider
from pumpguard.storage.errors import StorageError
from pumpguard.storage.kv import KeyValueStore, scoped_key

logger = get_logger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 20 * 60
DEFAULT_DEBOUNCE_SECONDS = 60


class RefreshLedger:
    """Time of the last successful credential refresh, in durable storage."""

    KEY = "pumpguard_last_refresh"

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        namespace: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.key = scoped_key(namespace, self.KEY)
        self._clock = clock
        self._last: float = 0.0

    def last_refresh(self) -> float:
        try:
            raw = self.storage.get(self.key)
        except StorageError as exc:
            logger.warning("refresh_ledger_read_failed", error=exc.message)
            return self._last
        if raw is None:
            return self._last
        try:
            return max(float(raw), self._last)
        except ValueError:
            logger.warning("refresh_ledger_corrupt", raw=raw[:32])
            return self._last

    def record(self, timestamp: Optional[float] = None) -> float:
        ts = self._clock() if timestamp is None else timestamp
        self._last = ts
        try:
            self.storage.set(self.key, repr(ts))
        except StorageError as exc:
            logger.warning("refresh_ledger_write_failed", error=exc.message)
        return ts

    def clear(self) -> None:
        self._last = 0.0
        try:
            self.storage.delete(self.key)
        except StorageError as exc:
            logger.warning("refresh_ledger_clear_failed", error=exc.message)


class TokenRefreshScheduler:
    def __init__(
        self,
        identity: IdentityProvider,
        ledger: RefreshLedger,
        guards: ProcessGuards,
        *,
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.identity = identity
        self.ledger = ledger
        self.guards = guards
        self.interval_seconds = interval_seconds
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._installed = False
        self._in_flight = False
        self._hidden = False
        self._online = True
        self._periodic_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.refresh_count = 0

    @property
    def installed(self) -> bool:
        return self._installed

    async def install(self) -> bool:
        """Start the periodic loop and run the initial refresh.

        Returns False when a scheduler is already installed in this process.
        """
        if not self.guards.claim("refresh_installed"):
            logger.debug("token_refresh_already_installed")
            return False
        self._installed = True
        logger.info(
            "token_refresh_installed",
            interval_seconds=self.interval_seconds,
            debounce_seconds=self.debounce_seconds,
        )
        self._periodic_task = asyncio.create_task(self._run_periodic())
        self.trigger("install")
        return True

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.refresh("periodic")

    def trigger(self, reason: str) -> None:
        if not self._installed:
            return
        task = asyncio.get_running_loop().create_task(self.refresh(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_visibility_change(self, visible: bool) -> None:
        was_hidden = self._hidden
        self._hidden = not visible
        if visible and was_hidden:
            logger.debug("tab_visible_refresh")
            self.trigger("visible")

    def on_network_change(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.debug("network_reconnected_refresh")
            self.trigger("online")

    async def refresh(self, reason: str = "manual") -> bool:
        """Refresh the credential unless one ran inside the debounce window.

        Returns True when a refresh request was actually issued.
        """
        now = self._clock()
        if self._in_flight:
            return False
        if now - self.ledger.last_refresh() < self.debounce_seconds:
            logger.debug("token_refresh_debounced", reason=reason)
            return False
        self._in_flight = True
        try:
            self.refresh_count += 1
            await self.identity.refresh_credential()
        except Exception as exc:
            logger.warning(
                "token_refresh_failed",
                reason=reason,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            self.ledger.record(now)
            logger.info("token_refreshed", reason=reason)
        finally:
            self._in_flight = False
        return True

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._installed = False
        logger.info("token_refresh_stopped")


__all__ = [
    "DEFAULT_DEBOUNCE_SECONDS",
    "DEFAULT_REFRESH_INTERVAL_SECONDS",
    "RefreshLedger",
    "TokenRefreshScheduler",
]

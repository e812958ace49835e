from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from pumpguard.logging import get_logger

logger = get_logger(__name__)


class Navigator(Protocol):
    """Where the host UI currently is, and how to move it."""

    def current_location(self) -> str: ...

    def navigate(self, path: str, *, hard: bool = False) -> None: ...


class Notifier(Protocol):
    def notify(
        self,
        title: str,
        description: str,
        *,
        variant: str = "default",
        duration: Optional[float] = None,
    ) -> None: ...


@dataclass
class SyncReport:
    success: int = 0
    failures: int = 0


class OfflineMutationQueue(Protocol):
    """Queue of writes made while offline, owned by the dashboard."""

    async def enqueue_mutation(self, action: str, table: str, data: Dict[str, Any]) -> str: ...

    async def force_sync(self) -> SyncReport: ...


class HeadlessNavigator:
    """Navigator for hosts without a browser; remembers the last location."""

    def __init__(self, initial_location: str = "/") -> None:
        self.location = initial_location
        self.history: List[str] = [initial_location]
        self.hard_navigations = 0

    def current_location(self) -> str:
        return self.location

    def navigate(self, path: str, *, hard: bool = False) -> None:
        logger.info("navigate", path=path, hard=hard)
        self.location = path
        self.history.append(path)
        if hard:
            self.hard_navigations += 1


class LoggingNotifier:
    """Notifier that writes user notices to the structured log."""

    def notify(
        self,
        title: str,
        description: str,
        *,
        variant: str = "default",
        duration: Optional[float] = None,
    ) -> None:
        log = logger.warning if variant == "destructive" else logger.info
        log("user_notice", title=title, description=description, variant=variant, duration=duration)


__all__ = [
    "HeadlessNavigator",
    "LoggingNotifier",
    "Navigator",
    "Notifier",
    "OfflineMutationQueue",
    "SyncReport",
]

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Set, Union

from pumpguard.logging import get_logger
from pumpguard.storage.models import AuthEvent, ProviderSession

logger = get_logger(__name__)

AuthEventCallback = Callable[[AuthEvent], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class IdentityProvider(Protocol):
    """Contract the coordinator relies on; errors are ``AuthError`` subclasses."""

    async def authenticate(self, email: str, password: str) -> ProviderSession: ...

    async def get_ambient_session(self) -> Optional[ProviderSession]: ...

    async def refresh_credential(self) -> ProviderSession: ...

    async def sign_out(self) -> None: ...

    async def update_credential(self, new_password: str) -> None: ...

    async def request_password_reset(self, email: str, redirect_to: str) -> None: ...

    async def verify_recovery_token(self, token: str) -> ProviderSession: ...

    def subscribe(self, callback: AuthEventCallback) -> Unsubscribe: ...


class AuthEventHub:
    """Listener registry shared by identity provider implementations.

    Events are delivered to every listener as independent tasks so one slow
    or failing listener never blocks the provider call that raised the event.
    """

    def __init__(self) -> None:
        self._listeners: list[AuthEventCallback] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: AuthEventCallback) -> Unsubscribe:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, kind: str, session: Optional[ProviderSession] = None) -> None:
        event = AuthEvent(kind=str(getattr(kind, "value", kind)), session=session)
        for callback in list(self._listeners):
            task = asyncio.get_running_loop().create_task(self._deliver(callback, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, callback: AuthEventCallback, event: AuthEvent) -> None:
        try:
            result: Any = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(
                "auth_event_listener_failed",
                kind=event.kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for every event delivered so far to finish processing."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["AuthEventCallback", "AuthEventHub", "IdentityProvider", "Unsubscribe"]

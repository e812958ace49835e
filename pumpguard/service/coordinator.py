"""Process-wide owner of session initialization and provider notifications."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional, Set

from pumpguard.logging import get_logger
from pumpguard.service.guards import ManualLogoutFlag, ProcessGuards
from pumpguard.service.identity import IdentityProvider, Unsubscribe
from pumpguard.service.profiles import ProfileLoader
from pumpguard.service.refresh import RefreshLedger
from pumpguard.service.ui import Navigator, Notifier, OfflineMutationQueue
from pumpguard.storage.models import AuthEvent, AuthEventKind, ProviderSession, SessionRecord
from pumpguard.storage.session_store import OfflineIdentityHints, SessionStore

logger = get_logger(__name__)

DEFAULT_REDIRECT_DELAY_SECONDS = 1.5


class CoordinatorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class AuthEventCoordinator:
    """Runs one-time session setup and the single provider subscription.

    Startup reconciles three sources of truth: a cached ``SessionRecord`` is
    trusted as-is; otherwise an ambient provider session is turned into a
    record by fetching its profile; anything else leaves the user signed
    out. ``READY`` is always reached, even when the fetch fails.

    Notifications are ignored while the manual-logout flag is raised. A
    ``SIGNED_IN`` whose profile fetch straddles a manual logout is dropped
    as well: the flag is checked again before the record is committed.
    """

    def __init__(
        self,
        store: SessionStore,
        identity: IdentityProvider,
        loader: ProfileLoader,
        guards: ProcessGuards,
        manual_logout: ManualLogoutFlag,
        hints: OfflineIdentityHints,
        ledger: RefreshLedger,
        navigator: Navigator,
        notifier: Notifier,
        *,
        login_path: str = "/login",
        redirect_delay: float = DEFAULT_REDIRECT_DELAY_SECONDS,
        offline_queue: Optional[OfflineMutationQueue] = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.loader = loader
        self.guards = guards
        self.manual_logout = manual_logout
        self.hints = hints
        self.ledger = ledger
        self.navigator = navigator
        self.notifier = notifier
        self.login_path = login_path
        self.redirect_delay = redirect_delay
        self.offline_queue = offline_queue

        self.state = CoordinatorState.UNINITIALIZED
        self.subscribed = False
        self._unsubscribe: Optional[Unsubscribe] = None
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def is_loading(self) -> bool:
        return self.state is not CoordinatorState.READY

    async def start(self) -> None:
        """Initialize once per process, then make sure the listener exists."""
        if not self.guards.claim("initialized"):
            logger.debug("auth_already_initialized")
            self.state = CoordinatorState.READY
            self.subscribe()
            return

        self.state = CoordinatorState.INITIALIZING
        logger.info("auth_initializing")
        # A flag left over from a previous process must not mute this one
        self.manual_logout.clear()
        try:
            await self._reconcile()
        except Exception as exc:
            logger.error(
                "auth_initialization_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.set(None)
        finally:
            self.state = CoordinatorState.READY
        self.subscribe()

    async def _reconcile(self) -> None:
        if self.store.get() is not None:
            logger.info("auth_cached_session_used")
            return

        try:
            ambient = await self.identity.get_ambient_session()
        except Exception as exc:
            logger.error("auth_ambient_session_failed", error=str(exc))
            self.store.set(None)
            return

        if ambient is None:
            logger.info("auth_no_active_session")
            self.store.set(None)
            return

        try:
            user = await self.loader.load(ambient.user_id, session=ambient)
        except Exception as exc:
            logger.error(
                "auth_session_restore_failed",
                user_id=ambient.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.set(None)
            return
        self.store.set(SessionRecord.new(user, version=self.store.version))
        logger.info("auth_session_restored", user_id=ambient.user_id)

    def subscribe(self) -> bool:
        if not self.guards.claim("listener_active"):
            return False
        self._unsubscribe = self.identity.subscribe(self.handle_event)
        self.subscribed = True
        logger.info("auth_listener_attached")
        return True

    async def handle_event(self, event: AuthEvent) -> None:
        if self._closed:
            return
        logger.info("auth_state_change", kind=event.kind)

        if self.manual_logout.is_set():
            logger.info("auth_event_skipped_manual_logout", kind=event.kind)
            return

        if event.kind == AuthEventKind.SIGNED_OUT:
            self._on_signed_out()
        elif event.kind == AuthEventKind.SIGNED_IN:
            await self._on_signed_in(event.session)
        elif event.kind == AuthEventKind.TOKEN_REFRESHED:
            self.ledger.record()
        elif event.kind == AuthEventKind.USER_UPDATED:
            logger.info("auth_user_updated")
        else:
            logger.info("auth_event_unhandled", kind=event.kind)

    def _on_signed_out(self) -> None:
        if self.navigator.current_location() == self.login_path:
            return
        logger.info("auth_session_expired")
        self.store.set(None)
        self.hints.clear()
        self.ledger.clear()
        self.notifier.notify(
            "Session Expired",
            "You have been automatically logged out.",
            duration=3.0,
        )
        task = asyncio.get_running_loop().create_task(self._redirect_to_login())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _redirect_to_login(self) -> None:
        # Give the notice time to render before leaving the page
        await asyncio.sleep(self.redirect_delay)
        if not self._closed:
            self.navigator.navigate(self.login_path, hard=True)

    async def _on_signed_in(self, session: Optional[ProviderSession]) -> None:
        if session is None:
            return
        try:
            user = await self.loader.load(session.user_id, session=session)
        except Exception as exc:
            logger.error(
                "auth_session_create_failed",
                user_id=session.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        if self.manual_logout.is_set() or self._closed:
            logger.info("auth_sign_in_dropped_manual_logout", user_id=session.user_id)
            return
        record = SessionRecord.new(user, version=self.store.version)
        self.store.set(record)
        self.hints.remember(record, session.email)
        await self._sync_offline_queue()

    async def _sync_offline_queue(self) -> None:
        if self.offline_queue is None:
            return
        try:
            report = await self.offline_queue.force_sync()
        except Exception as exc:
            logger.warning("offline_sync_failed", error=str(exc))
            return
        if report.failures:
            logger.warning(
                "offline_sync_partial", synced=report.success, failures=report.failures
            )
            self.notifier.notify(
                "Sync Incomplete",
                f"{report.failures} offline change(s) could not be synced.",
                variant="destructive",
            )

    async def flush(self) -> None:
        """Wait for scheduled redirects to run."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            self.subscribed = False
        for task in list(self._pending):
            task.cancel()
        for task in list(self._pending):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pending.clear()
        logger.info("auth_listener_detached")


__all__ = ["AuthEventCoordinator", "CoordinatorState", "DEFAULT_REDIRECT_DELAY_SECONDS"]

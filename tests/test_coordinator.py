"""Tests for AuthEventCoordinator startup and notification handling."""

import asyncio

from conftest import USER_EMAIL, USER_ID, FakeOfflineQueue
from pumpguard.service.coordinator import AuthEventCoordinator, CoordinatorState
from pumpguard.service.errors import ServiceUnavailableError, TransientBackendError
from pumpguard.service.ui import SyncReport
from pumpguard.storage.models import AuthEvent, AuthEventKind, SessionRecord, UserProfile


def _cached_record():
    return SessionRecord.new(UserProfile(id=USER_ID, email=USER_EMAIL, full_name="Cached"))


class TestStartup:
    async def test_no_session_reaches_ready_signed_out(self, runtime, identity):
        coordinator = runtime.coordinator
        assert coordinator.state is CoordinatorState.UNINITIALIZED
        assert coordinator.is_loading is True

        await coordinator.start()

        assert coordinator.state is CoordinatorState.READY
        assert coordinator.is_loading is False
        assert runtime.store.get() is None
        assert coordinator.subscribed is True
        assert identity.events.listener_count == 1

    async def test_cached_record_skips_network(self, runtime, identity, profiles):
        runtime.store.set(_cached_record())

        await runtime.coordinator.start()

        assert "get_ambient_session" not in identity.calls
        assert profiles.reads == 0
        assert runtime.store.get().user.full_name == "Cached"

    async def test_ambient_session_restored(self, runtime, identity):
        identity.session = identity.session_for(USER_EMAIL)

        await runtime.coordinator.start()

        record = runtime.store.get()
        assert record is not None
        assert record.user.id == USER_ID
        assert record.user.email == USER_EMAIL
        assert record.version == "2.0.0"

    async def test_transient_profile_error_recovered(self, runtime, identity, profiles):
        identity.session = identity.session_for(USER_EMAIL)
        profiles.read_errors = [TransientBackendError("NOT_FOUND")]

        await runtime.coordinator.start()

        assert runtime.store.get() is not None
        assert identity.refresh_count == 1
        assert profiles.reads == 2

    async def test_ambient_lookup_failure_still_ready(self, runtime, identity):
        identity.ambient_error = ServiceUnavailableError()

        await runtime.coordinator.start()

        assert runtime.coordinator.state is CoordinatorState.READY
        assert runtime.store.get() is None

    async def test_profile_failure_clears_and_ready(self, runtime, identity, profiles):
        identity.session = identity.session_for(USER_EMAIL)
        profiles.rows.clear()

        await runtime.coordinator.start()

        assert runtime.coordinator.state is CoordinatorState.READY
        assert runtime.store.get() is None

    async def test_stale_manual_logout_cleared_on_start(self, runtime):
        runtime.manual_logout.set()

        await runtime.coordinator.start()

        assert runtime.manual_logout.is_set() is False

    async def test_remount_skips_setup_and_resubscription(self, runtime, identity):
        await runtime.coordinator.start()
        calls_before = list(identity.calls)

        remount = AuthEventCoordinator(
            runtime.store,
            identity,
            runtime.loader,
            runtime.guards,
            runtime.manual_logout,
            runtime.hints,
            runtime.ledger,
            runtime.navigator,
            runtime.notifier,
        )
        await remount.start()

        assert remount.state is CoordinatorState.READY
        assert remount.subscribed is False
        assert identity.calls == calls_before
        assert identity.events.listener_count == 1


class TestNotifications:
    async def test_signed_out_elsewhere_expires_session(
        self, runtime, identity, navigator, notifier, durable_storage
    ):
        runtime.store.set(_cached_record())
        runtime.hints.remember(runtime.store.get())
        await runtime.coordinator.start()

        identity.events.emit(AuthEventKind.SIGNED_OUT)
        await identity.events.drain()
        await runtime.coordinator.flush()

        assert runtime.store.get() is None
        assert runtime.hints.email_key not in durable_storage
        assert "Session Expired" in notifier.titles
        assert navigator.current_location() == "/login"
        assert navigator.hard_navigations == 1

    async def test_signed_out_on_login_page_ignored(self, runtime, navigator, notifier):
        navigator.navigate("/login")
        record = _cached_record()
        runtime.store.set(record)

        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_OUT.value))

        assert runtime.store.get() is record
        assert notifier.notices == []

    async def test_signed_out_during_manual_logout_ignored(self, runtime, notifier):
        record = _cached_record()
        runtime.store.set(record)
        runtime.manual_logout.set()

        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_OUT.value))

        assert runtime.store.get() is record
        assert notifier.notices == []

    async def test_notifications_resume_after_grace(self, runtime, clock):
        runtime.store.set(_cached_record())
        runtime.manual_logout.set()
        clock.advance(2)

        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_OUT.value))
        await runtime.coordinator.flush()

        assert runtime.store.get() is None

    async def test_signed_in_creates_record_and_hint(self, runtime, identity):
        session = identity.session_for(USER_EMAIL)

        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_IN.value, session))

        assert runtime.store.get().user.id == USER_ID
        assert runtime.hints.email() == USER_EMAIL

    async def test_signed_in_loses_to_manual_logout(self, runtime, identity, profiles):
        """A logout that starts while the profile fetch is in flight wins."""
        profiles.read_gate = asyncio.Event()
        session = identity.session_for(USER_EMAIL)

        task = asyncio.create_task(
            runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_IN.value, session))
        )
        await asyncio.sleep(0)
        runtime.manual_logout.set()
        profiles.read_gate.set()
        await task

        assert runtime.store.get() is None
        assert runtime.hints.email() is None

    async def test_signed_in_syncs_offline_queue(self, runtime, identity, notifier):
        queue = FakeOfflineQueue(SyncReport(success=3, failures=2))
        runtime.coordinator.offline_queue = queue

        await runtime.coordinator.handle_event(
            AuthEvent(AuthEventKind.SIGNED_IN.value, identity.session_for(USER_EMAIL))
        )

        assert queue.syncs == 1
        assert "Sync Incomplete" in notifier.titles

    async def test_clean_offline_sync_is_silent(self, runtime, identity, notifier):
        queue = FakeOfflineQueue(SyncReport(success=1, failures=0))
        runtime.coordinator.offline_queue = queue

        await runtime.coordinator.handle_event(
            AuthEvent(AuthEventKind.SIGNED_IN.value, identity.session_for(USER_EMAIL))
        )

        assert queue.syncs == 1
        assert notifier.notices == []

    async def test_token_refreshed_only_records_time(self, runtime, clock):
        record = _cached_record()
        runtime.store.set(record)

        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.TOKEN_REFRESHED.value))

        assert runtime.ledger.last_refresh() == clock.now
        assert runtime.store.get() is record

    async def test_informational_and_unknown_kinds_ignored(self, runtime, identity):
        record = _cached_record()
        runtime.store.set(record)
        session = identity.session_for(USER_EMAIL)

        for kind in ("USER_UPDATED", "PASSWORD_RECOVERY", "MFA_CHALLENGE_VERIFIED"):
            await runtime.coordinator.handle_event(AuthEvent(kind, session))

        assert runtime.store.get() is record

    async def test_shutdown_unsubscribes_and_cancels_redirect(
        self, runtime, identity, navigator
    ):
        runtime.coordinator.redirect_delay = 30
        runtime.store.set(_cached_record())
        await runtime.coordinator.start()
        await runtime.coordinator.handle_event(AuthEvent(AuthEventKind.SIGNED_OUT.value))

        await runtime.coordinator.shutdown()

        assert identity.events.listener_count == 0
        assert navigator.current_location() == "/dashboard"

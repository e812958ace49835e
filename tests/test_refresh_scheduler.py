"""Tests for the background credential refresh scheduler."""

import asyncio

from conftest import USER_EMAIL
from pumpguard.service.errors import ServiceUnavailableError
from pumpguard.service.guards import ProcessGuards
from pumpguard.service.refresh import RefreshLedger, TokenRefreshScheduler
from pumpguard.storage.kv import MemoryKeyValueStore


async def _installed(runtime):
    assert await runtime.scheduler.install() is True
    await runtime.scheduler.drain()
    return runtime.scheduler


class TestInstall:
    async def test_install_refreshes_once(self, runtime, identity, clock):
        identity.session = identity.session_for(USER_EMAIL)
        scheduler = await _installed(runtime)

        assert identity.refresh_count == 1
        assert runtime.ledger.last_refresh() == clock.now
        assert scheduler.installed is True
        await scheduler.shutdown()

    async def test_second_install_is_noop(self, runtime, identity):
        scheduler = await _installed(runtime)
        other = TokenRefreshScheduler(identity, runtime.ledger, runtime.guards)

        assert await other.install() is False
        assert other.installed is False
        await scheduler.shutdown()

    async def test_triggers_ignored_before_install(self, runtime, identity):
        runtime.scheduler.on_visibility_change(False)
        runtime.scheduler.on_visibility_change(True)
        await runtime.scheduler.drain()

        assert identity.refresh_count == 0


class TestTriggers:
    async def test_visible_within_debounce_skipped(self, runtime, identity, clock):
        scheduler = await _installed(runtime)
        clock.advance(30)

        scheduler.on_visibility_change(False)
        scheduler.on_visibility_change(True)
        await scheduler.drain()

        assert identity.refresh_count == 1
        await scheduler.shutdown()

    async def test_visible_after_hidden_refreshes(self, runtime, identity, clock):
        scheduler = await _installed(runtime)
        clock.advance(61)

        scheduler.on_visibility_change(True)
        await scheduler.drain()
        assert identity.refresh_count == 1

        scheduler.on_visibility_change(False)
        scheduler.on_visibility_change(True)
        await scheduler.drain()
        assert identity.refresh_count == 2
        await scheduler.shutdown()

    async def test_reconnect_refreshes(self, runtime, identity, clock):
        scheduler = await _installed(runtime)
        clock.advance(61)

        scheduler.on_network_change(True)
        await scheduler.drain()
        assert identity.refresh_count == 1

        scheduler.on_network_change(False)
        scheduler.on_network_change(True)
        await scheduler.drain()
        assert identity.refresh_count == 2
        await scheduler.shutdown()

    async def test_simultaneous_triggers_refresh_once(self, runtime, identity, clock):
        scheduler = await _installed(runtime)
        clock.advance(120)

        scheduler.on_visibility_change(False)
        scheduler.on_network_change(False)
        scheduler.on_visibility_change(True)
        scheduler.on_network_change(True)
        await scheduler.drain()

        assert identity.refresh_count == 2
        await scheduler.shutdown()

    async def test_in_flight_refresh_deduplicated(self, runtime, identity, clock):
        gate = asyncio.Event()
        calls = []

        async def slow_refresh():
            calls.append(clock.now)
            await gate.wait()

        identity.refresh_credential = slow_refresh
        scheduler = runtime.scheduler

        first = asyncio.create_task(scheduler.refresh("visible"))
        await asyncio.sleep(0)
        assert await scheduler.refresh("online") is False
        gate.set()
        assert await first is True
        assert len(calls) == 1


class TestFailures:
    async def test_failure_not_recorded_and_retried(self, runtime, identity, clock):
        identity.refresh_error = ServiceUnavailableError()
        scheduler = await _installed(runtime)
        assert runtime.ledger.last_refresh() == 0.0

        identity.refresh_error = None
        clock.advance(1)
        scheduler.trigger("manual")
        await scheduler.drain()

        assert identity.refresh_count == 2
        assert runtime.ledger.last_refresh() == clock.now
        await scheduler.shutdown()


class TestPeriodic:
    async def test_periodic_loop_refreshes(self, identity, clock):
        ledger = RefreshLedger(MemoryKeyValueStore(), clock=clock)
        scheduler = TokenRefreshScheduler(
            identity,
            ledger,
            ProcessGuards(),
            interval_seconds=0.001,
            debounce_seconds=0,
            clock=clock,
        )
        await scheduler.install()
        await asyncio.sleep(0.05)
        await scheduler.shutdown()

        assert identity.refresh_count >= 2
        assert scheduler.installed is False

    async def test_shutdown_stops_loop(self, identity, clock):
        scheduler = TokenRefreshScheduler(
            identity,
            RefreshLedger(MemoryKeyValueStore(), clock=clock),
            ProcessGuards(),
            interval_seconds=0.001,
            debounce_seconds=0,
            clock=clock,
        )
        await scheduler.install()
        await scheduler.shutdown()
        count = identity.refresh_count
        await asyncio.sleep(0.02)

        assert identity.refresh_count == count

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse, urlunparse

from pumpguard.config import Settings, get_settings, reset_settings_cache
from pumpguard.logging import get_logger
from pumpguard.service.coordinator import AuthEventCoordinator
from pumpguard.service.guards import ManualLogoutFlag, ProcessGuards
from pumpguard.service.identity import IdentityProvider
from pumpguard.service.lifecycle import SessionLifecycleAPI
from pumpguard.service.password_policy import PasswordPolicy
from pumpguard.service.profiles import ProfileLoader, ProfileStore
from pumpguard.service.rate_limiter import RateLimiter
from pumpguard.service.refresh import RefreshLedger, TokenRefreshScheduler
from pumpguard.service.retry import RetryableCall
from pumpguard.service.supabase import GoTrueIdentityProvider, PostgrestProfileStore
from pumpguard.service.ui import (
    HeadlessNavigator,
    LoggingNotifier,
    Navigator,
    Notifier,
    OfflineMutationQueue,
)
from pumpguard.storage.kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from pumpguard.storage.session_store import OfflineIdentityHints, SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _durable_storage(settings: Settings) -> KeyValueStore:
    redis_error: Exception | None = None
    if settings.redis_url and not settings.use_memory_store:
        try:
            store = RedisKeyValueStore(settings.redis_url, namespace=settings.redis_namespace)
            store.verify_connection()
            logger.info("runtime_durable_storage", backend="redis")
            return store
        except Exception as exc:
            redis_error = exc

    if settings.use_memory_store:
        logger.info("runtime_durable_storage", backend="memory")
        return MemoryKeyValueStore()

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for rate limits, offline hints and the refresh ledger; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; rate limits and offline hints "
            "are in-memory only."
        ),
        mode=fallback_mode,
    )
    return MemoryKeyValueStore()


class SessionRuntime:
    """Composition root for the session lifecycle.

    Owns the process guards that keep initialization, the provider
    subscription and the refresh scheduler to one instance each.
    ``ensure_started()`` and ``shutdown()`` are idempotent.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        identity: Optional[IdentityProvider] = None,
        profiles: Optional[ProfileStore] = None,
        session_storage: Optional[KeyValueStore] = None,
        durable_storage: Optional[KeyValueStore] = None,
        navigator: Optional[Navigator] = None,
        notifier: Optional[Notifier] = None,
        offline_queue: Optional[OfflineMutationQueue] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        logger.info(
            "runtime_init_started",
            supabase_url=s.supabase_url,
            test_mode=s.test_mode,
            use_memory_store=s.use_memory_store,
        )

        if session_storage is None:
            session_storage = MemoryKeyValueStore()
        self.session_storage = session_storage
        if durable_storage is None:
            durable_storage = _durable_storage(s)
        self.durable_storage = durable_storage

        self._owned_clients: list = []
        if identity is None:
            gotrue = GoTrueIdentityProvider(
                s.supabase_url, s.supabase_anon_key, timeout=s.http_timeout_seconds
            )
            self._owned_clients.append(gotrue)
            identity = gotrue
        self.identity = identity
        if profiles is None:
            token_source = getattr(identity, "current_access_token", lambda: None)
            postgrest = PostgrestProfileStore(
                s.supabase_url,
                s.supabase_anon_key,
                token_source=token_source,
                table=s.profiles_table,
                timeout=s.http_timeout_seconds,
            )
            self._owned_clients.append(postgrest)
            profiles = postgrest
        self.profiles = profiles

        self.navigator = navigator or HeadlessNavigator()
        self.notifier = notifier or LoggingNotifier()
        self.offline_queue = offline_queue

        self.guards = ProcessGuards()
        self.store = SessionStore(
            self.session_storage, key=s.session_key, version=s.session_version
        )
        self.client_id = s.client_id or uuid.uuid4().hex
        self.hints = OfflineIdentityHints(self.durable_storage, namespace=self.client_id)
        self.manual_logout = ManualLogoutFlag(
            self.session_storage, grace_seconds=s.manual_logout_grace_seconds, clock=clock
        )
        self.ledger = RefreshLedger(self.durable_storage, namespace=self.client_id, clock=clock)
        self.rate_limiter = RateLimiter(
            self.durable_storage,
            max_attempts=s.rate_limit_max_attempts,
            window_seconds=s.rate_limit_window_seconds,
            clock=clock,
        )
        self.retry = RetryableCall(
            self.identity.refresh_credential,
            max_retries=s.retry_max_attempts,
            initial_delay=s.retry_initial_delay_seconds,
            sleep=sleep,
        )
        self.loader = ProfileLoader(self.profiles, self.identity, self.retry)
        self.coordinator = AuthEventCoordinator(
            self.store,
            self.identity,
            self.loader,
            self.guards,
            self.manual_logout,
            self.hints,
            self.ledger,
            self.navigator,
            self.notifier,
            login_path=s.login_path,
            redirect_delay=s.session_expired_redirect_delay_seconds,
            offline_queue=offline_queue,
        )
        self.scheduler = TokenRefreshScheduler(
            self.identity,
            self.ledger,
            self.guards,
            interval_seconds=s.token_refresh_interval_seconds,
            debounce_seconds=s.token_refresh_debounce_seconds,
            clock=clock,
        )
        self.api = SessionLifecycleAPI(
            self.store,
            self.identity,
            self.loader,
            self.coordinator,
            self.rate_limiter,
            self.manual_logout,
            self.hints,
            self.ledger,
            self.navigator,
            self.notifier,
            policy=PasswordPolicy(),
            admin_email_patterns=s.admin_email_patterns,
            login_path=s.login_path,
            reset_redirect_url=s.password_reset_redirect_url,
            admin_delay=s.admin_reset_delay_seconds,
            sleep=sleep,
        )
        self._started = False
        self._closed = False
        self._start_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            client_id=self.client_id,
            redis_enabled=isinstance(self.durable_storage, RedisKeyValueStore),
            offline_queue=offline_queue is not None,
            refresh_interval_seconds=s.token_refresh_interval_seconds,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def ensure_started(self) -> SessionLifecycleAPI:
        async with self._start_lock:
            if self._closed:
                raise RuntimeError("session runtime has been shut down")
            if not self._started:
                await self.coordinator.start()
                await self.scheduler.install()
                self._started = True
        return self.api

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.scheduler.shutdown()
        await self.coordinator.shutdown()
        for client in self._owned_clients:
            try:
                await client.aclose()
            except Exception as exc:
                logger.warning("runtime_client_close_failed", error=str(exc))
        if isinstance(self.durable_storage, RedisKeyValueStore):
            self.durable_storage.close()
        logger.info("runtime_shutdown")


runtime: SessionRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> SessionRuntime:
    """Get or create the SessionRuntime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = SessionRuntime()
        return runtime


def reset_runtime_for_tests() -> SessionRuntime:
    """Rebuild the singleton from a freshly read environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.shutdown())
            else:
                loop.create_task(previous.shutdown())
        runtime = SessionRuntime(settings)
        return runtime


__all__ = ["SessionRuntime", "get_runtime", "reset_runtime_for_tests"]

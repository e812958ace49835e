import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Must be in place before pumpguard.config reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pumpguard.config import Settings  # noqa: E402
from pumpguard.service.errors import (  # noqa: E402
    InvalidCredentialsError,
    UnauthenticatedError,
    UnknownAuthError,
)
from pumpguard.service.identity import AuthEventHub  # noqa: E402
from pumpguard.service.runtime import SessionRuntime  # noqa: E402
from pumpguard.service.ui import HeadlessNavigator, SyncReport  # noqa: E402
from pumpguard.storage.kv import MemoryKeyValueStore  # noqa: E402
from pumpguard.storage.models import AuthEventKind, ProviderSession  # noqa: E402

USER_ID = "user-1"
USER_EMAIL = "user@x.com"
USER_PASSWORD = "Abc123!@"


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: List[Tuple[str, str, str]] = []

    def notify(self, title, description, *, variant="default", duration=None):
        self.notices.append((title, description, variant))

    @property
    def titles(self) -> List[str]:
        return [title for title, _, _ in self.notices]


class FakeIdentityProvider:
    """In-memory identity provider that announces changes like GoTrue does."""

    def __init__(self, *, emit_events: bool = True) -> None:
        self.events = AuthEventHub()
        self.emit_events = emit_events
        self.passwords: Dict[str, str] = {}
        self.user_ids: Dict[str, str] = {}
        self.session: Optional[ProviderSession] = None
        self.recovery_tokens: Dict[str, ProviderSession] = {}
        self.calls: List[str] = []
        self.reset_requests: List[Tuple[str, str]] = []
        self.updated_passwords: List[str] = []
        self.refresh_count = 0
        self.refresh_error: Optional[Exception] = None
        self.authenticate_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.reset_error: Optional[Exception] = None
        self.sign_out_error: Optional[Exception] = None
        self.ambient_error: Optional[Exception] = None

    def add_user(self, email: str, password: str, user_id: str) -> None:
        self.passwords[email] = password
        self.user_ids[email] = user_id

    def session_for(self, email: str) -> ProviderSession:
        user_id = self.user_ids[email]
        return ProviderSession(
            user_id=user_id,
            email=email,
            access_token=f"access-{user_id}",
            refresh_token=f"refresh-{user_id}",
        )

    def _emit(self, kind, session=None) -> None:
        if self.emit_events:
            self.events.emit(kind, session)

    def subscribe(self, callback):
        return self.events.subscribe(callback)

    async def authenticate(self, email, password):
        self.calls.append("authenticate")
        if self.authenticate_error is not None:
            raise self.authenticate_error
        if email not in self.passwords or self.passwords[email] != password:
            raise InvalidCredentialsError()
        self.session = self.session_for(email)
        self._emit(AuthEventKind.SIGNED_IN, self.session)
        return self.session

    async def get_ambient_session(self):
        self.calls.append("get_ambient_session")
        if self.ambient_error is not None:
            raise self.ambient_error
        return self.session

    async def refresh_credential(self):
        self.calls.append("refresh_credential")
        self.refresh_count += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        self._emit(AuthEventKind.TOKEN_REFRESHED, self.session)
        return self.session

    async def sign_out(self):
        self.calls.append("sign_out")
        self.session = None
        self._emit(AuthEventKind.SIGNED_OUT, None)
        if self.sign_out_error is not None:
            raise self.sign_out_error

    async def update_credential(self, new_password):
        self.calls.append("update_credential")
        if self.update_error is not None:
            raise self.update_error
        if self.session is None:
            raise UnauthenticatedError()
        self.updated_passwords.append(new_password)
        if self.session.email:
            self.passwords[self.session.email] = new_password
        self._emit(AuthEventKind.USER_UPDATED, self.session)

    async def request_password_reset(self, email, redirect_to):
        self.calls.append("request_password_reset")
        if self.reset_error is not None:
            raise self.reset_error
        self.reset_requests.append((email, redirect_to))

    async def verify_recovery_token(self, token):
        self.calls.append("verify_recovery_token")
        session = self.recovery_tokens.get(token)
        if session is None:
            raise UnauthenticatedError("Token has expired or is invalid")
        self.session = session
        self._emit(AuthEventKind.PASSWORD_RECOVERY, session)
        return session


class FakeProfileStore:
    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.reads = 0
        self.writes: List[Tuple[str, Dict[str, Any]]] = []
        self.read_errors: List[Exception] = []
        self.write_error: Optional[Exception] = None
        self.read_gate: Optional[asyncio.Event] = None

    async def read_profile(self, user_id):
        self.reads += 1
        if self.read_gate is not None:
            await self.read_gate.wait()
        if self.read_errors:
            raise self.read_errors.pop(0)
        if user_id not in self.rows:
            raise UnknownAuthError("Profile not found.", original_message=user_id)
        return dict(self.rows[user_id])

    async def write_profile(self, user_id, partial):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((user_id, dict(partial)))
        self.rows.setdefault(user_id, {"id": user_id}).update(partial)


class FakeOfflineQueue:
    def __init__(self, report: Optional[SyncReport] = None) -> None:
        self.report = report or SyncReport()
        self.syncs = 0
        self.enqueued: List[Tuple[str, str, Dict[str, Any]]] = []

    async def enqueue_mutation(self, action, table, data):
        self.enqueued.append((action, table, data))
        return f"mutation-{len(self.enqueued)}"

    async def force_sync(self):
        self.syncs += 1
        return self.report


def profile_row(user_id: str = USER_ID, email: str = USER_EMAIL, **overrides) -> Dict[str, Any]:
    row = {
        "id": user_id,
        "email": email,
        "full_name": "Ama Mensah",
        "role": "station_manager",
        "phone": None,
        "station_id": "station-7",
        "is_active": True,
    }
    row.update(overrides)
    return row


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        client_id="test-client",
        retry_initial_delay_ms=10,
        admin_reset_delay_seconds=0.5,
        session_expired_redirect_delay_seconds=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def identity():
    provider = FakeIdentityProvider()
    provider.add_user(USER_EMAIL, USER_PASSWORD, USER_ID)
    return provider


@pytest.fixture
def profiles():
    store = FakeProfileStore()
    store.rows[USER_ID] = profile_row()
    return store


@pytest.fixture
def navigator():
    return HeadlessNavigator("/dashboard")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_storage():
    return MemoryKeyValueStore()


@pytest.fixture
def durable_storage():
    return MemoryKeyValueStore()


@pytest.fixture
def runtime(
    settings,
    identity,
    profiles,
    session_storage,
    durable_storage,
    navigator,
    notifier,
    sleeper,
    clock,
):
    return SessionRuntime(
        settings,
        identity=identity,
        profiles=profiles,
        session_storage=session_storage,
        durable_storage=durable_storage,
        navigator=navigator,
        notifier=notifier,
        sleep=sleeper,
        clock=clock,
    )


@pytest.fixture
def api(runtime):
    return runtime.api

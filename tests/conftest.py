import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything initializes settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GATEWAY_BASE_URL", "http://gateway.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from cocoauth.config import Settings  # noqa: E402
from cocoauth.service.errors import UpstreamCoordinationError  # noqa: E402
from cocoauth.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingCoordinator:
    """Device coordinator double that records calls and can be told to fail."""

    def __init__(self, sessions=None):
        self.calls = []
        self.fail_on = set()
        self.sessions = sessions
        self.session_seen_during_calls = []
        self.closed = False

    async def _record(self, name, user_id, partition, **fields):
        if self.sessions is not None:
            self.session_seen_during_calls.append(
                await self.sessions.get(partition, user_id)
            )
        self.calls.append((name, {"user_id": user_id, **fields}))
        if name in self.fail_on:
            raise UpstreamCoordinationError(f"{name} failed", detail={"call": name})

    async def notify_fcm_token_changed(self, user_id, fcm_token, client):
        await self._record(
            "push_device", user_id, client.client_type, fcm_token=fcm_token, client=client
        )

    async def notify_other_devices_evicted(self, user_id, fcm_token, client_type, access_token):
        await self._record(
            "chat_evict",
            user_id,
            client_type,
            fcm_token=fcm_token,
            client_type=client_type,
            access_token=access_token,
        )

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_cache=True,
        access_token_ttl_seconds=60,
        refresh_token_ttl_seconds=600,
        email_code_ttl_seconds=300,
    )


@pytest.fixture
def coordinator():
    return RecordingCoordinator()


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

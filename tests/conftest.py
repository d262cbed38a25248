import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Blank REDIS_URL keeps rate limits process-local in tests
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gymauth.config import Settings  # noqa: E402
from gymauth.service.audit import AuditLogger  # noqa: E402
from gymauth.service.auth import AuthService  # noqa: E402
from gymauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from gymauth.service.sessions import SessionManager  # noqa: E402
from gymauth.service.tokens import TokenCodec  # noqa: E402
from gymauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Gym!Strong7Pass"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        access_token_secret="unit-access-secret-0123456789abcdef",
        refresh_token_secret="unit-refresh-secret-0123456789abcdef",
        bcrypt_rounds=4,
    )


@pytest.fixture
def store():
    return MemoryStore()


class Services:
    def __init__(self, store, settings, clock):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.audit = AuditLogger(store)
        self.codec = TokenCodec(settings, clock=clock)
        self.sessions = SessionManager(store, self.codec, self.audit, settings, clock=clock)
        self.auth = AuthService(store, self.sessions, self.codec, self.audit, settings, clock=clock)

    def create_user(self, username="jdoe", email="jdoe@example.com", password=STRONG_PASSWORD, **kwargs):
        return asyncio.run(self.auth.create_user(username, email, password, **kwargs))


@pytest.fixture
def services(store, settings, clock):
    return Services(store, settings, clock)


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

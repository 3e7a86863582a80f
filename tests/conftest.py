import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before any import that builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "64")
os.environ.setdefault("SEED_DEMO_USERS", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authlab.service.audit import AuditLog  # noqa: E402
from authlab.service.directory import IdentityDirectory  # noqa: E402
from authlab.service.passwords import CredentialVerifier  # noqa: E402
from authlab.service.runtime import reset_runtime_for_tests  # noqa: E402
from authlab.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable UTC clock for components that take ``clock=``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key")


@pytest.fixture
def passwords():
    return CredentialVerifier(time_cost=1, memory_cost_kib=64)


@pytest.fixture
def audit(store, clock):
    return AuditLog(store, clock=clock)


@pytest.fixture
def directory(store, passwords, audit, clock):
    return IdentityDirectory(store, passwords, audit, clock=clock)


@pytest.fixture
def alice(directory):
    return directory.create("alice", "alice@example.com", "wonderland1")


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

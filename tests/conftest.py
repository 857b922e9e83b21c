import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might initialize settings or logging
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import PasswordPolicy, SessionPolicy  # noqa: E402
from sessionguard.service.audit import InMemoryAuditSink  # noqa: E402
from sessionguard.service.passwords import PasswordHashing  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.sessions import SessionLifecycleManager  # noqa: E402
from sessionguard.service.validation import SessionSecurityValidator  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
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
    return MemoryStore()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def hashing():
    hashing = PasswordHashing(time_cost=1, memory_cost=1024, parallelism=1, workers=2)
    yield hashing
    hashing.close()


@pytest.fixture
def validator(clock):
    return SessionSecurityValidator(SessionPolicy(), PasswordPolicy(), clock=clock)


@pytest.fixture
def manager(store, validator, audit, clock):
    return SessionLifecycleManager(store, validator, audit=audit, clock=clock)


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

import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that reads settings
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("KEYSTORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apexguard.config import Settings, reset_settings_cache  # noqa: E402
from apexguard.service.audit import AuditLog  # noqa: E402
from apexguard.service.security import SecurityService  # noqa: E402
from apexguard.service.users import InMemoryUserDirectory  # noqa: E402
from apexguard.storage.memory import MemoryKeyValueStore  # noqa: E402

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(environment="test")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def keystore(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def users():
    return InMemoryUserDirectory()


@pytest.fixture
def service(settings, clock, keystore, users, sink):
    audit = AuditLog(settings, [sink], clock=clock)
    return SecurityService(settings, keystore=keystore, audit=audit, users=users, clock=clock)


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

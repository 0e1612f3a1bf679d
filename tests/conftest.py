import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from leasekeeper.app import create_app  # noqa: E402
from leasekeeper.config import Settings, reset_settings_cache  # noqa: E402
from leasekeeper.service.audit import MemoryAuditSink  # noqa: E402
from leasekeeper.service.runtime import Runtime  # noqa: E402
from leasekeeper.storage.memory import MemoryStore  # noqa: E402

ISSUER_KEY = "issuer-key-for-tests-only"


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = dict(
        test_mode=True,
        use_memory_store=True,
        issuer_api_key=ISSUER_KEY,
        storage_retry_backoff_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def runtime(settings, clock, store, audit):
    return Runtime(settings, clock=clock, store=store, audit=audit)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


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

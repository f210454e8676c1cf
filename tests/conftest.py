import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before sessionguard modules load settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps the blacklist and counters in-process and deterministic
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.client.channel import InMemoryBroadcastBus  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingLogger:
    """Stands in for a structlog logger and keeps every event."""

    def __init__(self):
        self.events = []

    def _record(self, level, event, **kw):
        self.events.append((level, event, kw))

    def debug(self, event, **kw):
        self._record("debug", event, **kw)

    def info(self, event, **kw):
        self._record("info", event, **kw)

    def warning(self, event, **kw):
        self._record("warning", event, **kw)

    def error(self, event, **kw):
        self._record("error", event, **kw)

    def named(self, event):
        return [kw for _, name, kw in self.events if name == event]


@pytest.fixture
def recording_logger():
    return RecordingLogger()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    InMemoryBroadcastBus.reset_registry()
    yield
    reset_runtime_for_tests()


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

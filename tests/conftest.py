import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that builds settings or the app
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Sessions, OAuth state and rate limits stay in-process so tests never share state
os.environ["REDIS_URL"] = ""
# TestClient talks plain http; secure cookies would never be sent back
os.environ["COOKIE_SECURE"] = "false"

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Stands in for EmailService and keeps every message it was asked to send."""

    def __init__(self):
        self.sent = []

    def to(self, address):
        mailer = self

        class _Recipient:
            def send_raw(self, body, *, subject=None):
                mailer.sent.append({"to": address, "body": body, "subject": subject})
                return True

        return _Recipient()

    def last_body_for(self, address):
        bodies = [m["body"] for m in self.sent if m["to"] == address]
        return bodies[-1] if bodies else None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def configure(monkeypatch):
    """Apply environment overrides and rebuild the runtime with them."""

    def _configure(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, str(value).lower() if isinstance(value, bool) else str(value))
        return reset_runtime_for_tests()

    return _configure


@pytest.fixture
def mailer():
    from gatehouse.service.runtime import get_runtime

    recording = RecordingMailer()
    get_runtime().flows.mailer = recording
    return recording


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

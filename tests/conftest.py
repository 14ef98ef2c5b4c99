import json
import os
import sys
import threading
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so `import credrotator...` works locally
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credrotator.rotate_core.updater import ServiceCredentialUpdater  # noqa: E402


class VirtualClock:
    """Manually advanced clock for driving backoff without real sleeps."""

    def __init__(self, start: float = 0.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeTimer:
    """threading.Timer stand-in; tests call fire() instead of waiting."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.finished = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.finished = True
        self.function(*self.args, **self.kwargs)


class FakeUpdater(ServiceCredentialUpdater):
    """Scripted apply capability recording every call."""

    def __init__(self, results=None, clock=None, service_name="Sample Service", accessible=True):
        super().__init__(service_name)
        self.results = list(results or [])
        self.clock = clock
        self.accessible = accessible
        self.calls = []
        self.call_times = []
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self.delay = 0.0

    def validate_access(self, cancel=None):
        return self.accessible

    def apply(self, record, cancel=None):
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            self.calls.append(record)
            if self.clock is not None:
                self.call_times.append(self.clock.now())
            if self.delay:
                threading.Event().wait(self.delay)
            result = self.results.pop(0) if self.results else True
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            with self._lock:
                self._active -= 1


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def fake_timers():
    FakeTimer.created = []
    yield FakeTimer
    FakeTimer.created = []


@pytest.fixture
def write_record(tmp_path):
    """Write a credentials record and pin its mtime; returns the path."""

    def _write(payload=None, *, raw=None, mtime=None, name="credentials.json"):
        path = tmp_path / name
        if raw is None:
            raw = json.dumps(payload if payload is not None else {
                "Username": "alice",
                "Password": "s3cr3t-value",
            })
        path.write_text(raw, encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _write

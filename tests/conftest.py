"""Shared fixtures for the threat monitor test suite."""

import threading

import pytest

from threat_monitor.event import (EventKind, Outcome, PartialEvent,
                                  RequestContext, Severity)
from threat_monitor.log_writer import AuditLog
from threat_monitor.sinks import SinkAdapter, SinkDispatcher, SinkResult


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink(SinkAdapter):
    """Sink that keeps every event it is handed."""

    def __init__(self, name: str = "recording", fail: bool = False, delay: float = 0.0) -> None:
        super().__init__("memory://" + name)
        self.name = name
        self.fail = fail
        self.delay = delay
        self.events = []
        self._lock = threading.Lock()

    def send(self, event):
        if self.delay:
            threading.Event().wait(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        with self._lock:
            self.events.append(event)
        return SinkResult(self.name, True, status_code=200)


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "ok") -> None:
        self.status_code = status_code
        self.text = text


class FakeHttp:
    """Stands in for the requests module in sink adapters."""

    def __init__(self, status_code: int = 200, exc: Exception = None) -> None:
        self.status_code = status_code
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return FakeResponse(self.status_code)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_log(tmp_path):
    return AuditLog(str(tmp_path / "audit.log"))


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(recording_sink, audit_log):
    d = SinkDispatcher([recording_sink], audit_log, timeout=2.0)
    yield d
    d.shutdown(wait_for_pending=False)


@pytest.fixture
def browser_context():
    return RequestContext(
        method="GET",
        url="/api/receipts",
        headers={
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                          "(KHTML, like Gecko) Chrome/120.0 Safari/537.36",
            "Referer": "https://app.example.com/receipts",
            "Authorization": "Bearer super-secret-token",
            "Cookie": "sid=abc123",
            "X-API-Key": "key-123",
        },
        ip="203.0.113.10",
    )


def _auth_failure(user_id="alice", ip="203.0.113.10"):
    return PartialEvent(
        kind=EventKind.AUTH_FAILURE,
        severity=Severity.MEDIUM,
        outcome=Outcome.FAILURE,
        details={"endpoint": "/api/login", "referer": "https://app.example.com/login"},
        ip=ip,
        user_id=user_id,
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Firefox/121.0",
    )


@pytest.fixture
def auth_failure():
    """Factory for failed-login reports."""
    return _auth_failure

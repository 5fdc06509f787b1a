"""
End-to-end walkthrough of the threat monitor pipeline.
Reports a mix of normal and hostile activity and prints what got dispatched.

Run:
    python example_usage.py
"""

import tempfile
import threading

from threat_monitor import (EventKind, Outcome, PartialEvent, RequestContext,
                            SecurityMonitor, Severity, configure_logging)
from threat_monitor.config import MonitorSettings
from threat_monitor.log_writer import AuditLog
from threat_monitor.sinks import SinkAdapter, SinkDispatcher, SinkResult


class PrintingSink(SinkAdapter):
    """Stand-in for a SIEM backend that prints what it receives."""

    name = "console"

    def __init__(self):
        super().__init__("console://")
        self._lock = threading.Lock()

    def send(self, event):
        with self._lock:
            print(f"  -> {event.kind.value:<20} severity={event.severity.value:<8} "
                  f"risk={event.risk_score:<4} ip={event.ip}")
        return SinkResult(self.name, True)


BROWSER = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36"


def context(ip, url="/api/receipts", method="GET", query=None, user_agent=BROWSER):
    return RequestContext(
        method=method,
        url=url,
        headers={"user-agent": user_agent, "referer": "https://app.example.com/",
                 "authorization": "Bearer never-logged"},
        query=query,
        ip=ip,
    )


def main():
    workdir = tempfile.mkdtemp(prefix="threat-monitor-")
    configure_logging(f"{workdir}/run.log")
    settings = MonitorSettings(_env_file=None, audit_log_path=f"{workdir}/audit.log")
    audit = AuditLog(settings.audit_log_path)
    monitor = SecurityMonitor(settings=settings,
                              dispatcher=SinkDispatcher([PrintingSink()], audit))

    print("=" * 60)
    print("THREAT MONITOR WALKTHROUGH")
    print("=" * 60)

    print("\n1. Normal data access")
    monitor.log_security_event(PartialEvent(kind=EventKind.DATA_ACCESS),
                               context("198.51.100.10"))
    monitor.flush()

    print("\n2. Password guessing (5 failures)")
    for _ in range(5):
        monitor.log_security_event(
            PartialEvent(kind=EventKind.AUTH_FAILURE, outcome=Outcome.FAILURE,
                         user_id="alice"),
            context("203.0.113.66", url="/api/auth/login", method="POST"))
    monitor.flush()

    print("\n3. SQL injection in a search query")
    monitor.log_security_event(PartialEvent(kind=EventKind.DATA_ACCESS),
                               context("203.0.113.77", url="/api/search",
                                       query={"q": "' OR 1=1 --"}))
    monitor.flush()

    print("\n4. Scripted client")
    monitor.log_security_event(PartialEvent(severity=Severity.LOW),
                               context("192.0.2.5", user_agent="python-requests/2.31"))
    monitor.flush()

    print("\nSuspicious IPs:", sorted(monitor.suspicious_ips))
    print("Audit log:", audit.get_stats())
    monitor.shutdown()


if __name__ == "__main__":
    main()

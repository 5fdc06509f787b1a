# src/threat_monitor/instrumentation.py
"""
Global instrumentation interface for the threat monitor.

This module owns the process-wide SecurityMonitor and exposes
``log_security_event``, the single entry point request handlers, auth
middleware and error handlers use to report activity.
"""

import logging
import threading
from typing import Optional

from .config import get_settings
from .event import RequestContext
from .log_writer import configure_logging
from .monitor import PartialLike, SecurityMonitor

_monitor: Optional[SecurityMonitor] = None
_lock = threading.Lock()


def get_monitor() -> SecurityMonitor:
    """Return the process-wide monitor, creating it and the run log on first use."""
    global _monitor
    if _monitor is None:
        with _lock:
            if _monitor is None:
                settings = get_settings()
                configure_logging(settings.run_log_path)
                _monitor = SecurityMonitor(settings=settings)
    return _monitor


def set_monitor(monitor: Optional[SecurityMonitor]) -> None:
    """Replace the process-wide monitor (application startup, tests)."""
    global _monitor
    with _lock:
        _monitor = monitor


def log_security_event(partial: PartialLike = None,
                       context: Optional[RequestContext] = None) -> None:
    """Report activity to the global monitor. Never raises."""
    try:
        monitor = get_monitor()
    except Exception as e:
        logging.getLogger(__name__).error("Security monitor unavailable: %s", e)
        return
    monitor.log_security_event(partial, context)


__all__ = ['get_monitor', 'set_monitor', 'log_security_event']

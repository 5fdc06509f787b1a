# src/threat_monitor/log_writer.py
"""
Local audit logging for the threat monitor.

Every dispatched event is appended to an NDJSON audit file regardless of
which external sinks are configured or reachable, and summarized in the run
log at a level that follows its severity.
"""

import json
import logging
import os
import pathlib
import threading
from collections import Counter, deque
from typing import Any, Dict, List

from .event import SecurityEvent, Severity

logger = logging.getLogger("threat_monitor.audit")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

_SEVERITY_LEVELS = {
    Severity.LOW: logging.DEBUG,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.WARNING,
}


def configure_logging(run_log_path: str = "logs/run.log", level: int = logging.INFO) -> None:
    """
    Send threat monitor logs to the run log file.

    Safe to call more than once; the handler is only attached the first time
    for a given path.
    """
    pathlib.Path(run_log_path).parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger("threat_monitor")
    target = os.path.abspath(run_log_path)
    for handler in root.handlers:
        if getattr(handler, "baseFilename", None) == target:
            return
    handler = logging.FileHandler(run_log_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


class AuditLog:
    """
    Always-on local record of every security event.

    Attributes:
        path: Path of the NDJSON audit file

    Example:
        >>> audit = AuditLog("logs/security_audit.log")
        >>> audit.write(event)
        >>> audit.tail(10)
    """

    def __init__(self, path: str) -> None:
        pathlib.Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()

    def write(self, event: SecurityEvent) -> None:
        """Append the event to the audit file and summarize it in the run log."""
        record = event.to_dict()

        level = _SEVERITY_LEVELS.get(event.severity, logging.INFO)
        logger.log(level, "Security event %s %s/%s ip=%s risk=%.1f",
                   event.id, event.kind.value, event.severity.value,
                   event.ip, event.risk_score)

        try:
            line = json.dumps(record, default=str)
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")  # NDJSON format
        except (IOError, TypeError, ValueError) as e:
            logger.error("Failed to write audit log: %s", e)

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return up to ``limit`` most recent audit records, oldest first."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = deque((line for line in f if line.strip()), maxlen=limit)
        except FileNotFoundError:
            return []
        records = []
        for line in lines:
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return records

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about logged events.

        Returns:
            Total record count and per-kind counts
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                kinds = Counter(
                    json.loads(line).get("event_type", "unknown")
                    for line in f if line.strip()
                )
        except (IOError, json.JSONDecodeError):
            return {"total_events": 0, "by_type": {}}
        return {"total_events": sum(kinds.values()), "by_type": dict(kinds)}

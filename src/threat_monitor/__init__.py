# src/threat_monitor/__init__.py
"""
Threat Monitor

Security event monitoring and threat detection for web backends.
Turns request activity into structured security events, runs stateful
threat detection over them and ships every event to the configured SIEM
backends plus a local audit log.
"""

__version__ = "1.0.0"

from .enrichment import EventEnricher
from .event import (EventKind, Outcome, PartialEvent, RequestContext,
                    SecurityEvent, Severity)
from .instrumentation import get_monitor, log_security_event, set_monitor
from .log_writer import AuditLog, configure_logging
from .monitor import SecurityMonitor
from .risk import score
from .rules import DetectionConfig, ThreatDetectionEngine
from .sinks import SinkDispatcher

__all__ = [
    'AuditLog',
    'configure_logging',
    'DetectionConfig',
    'EventEnricher',
    'EventKind',
    'get_monitor',
    'log_security_event',
    'Outcome',
    'PartialEvent',
    'RequestContext',
    'score',
    'SecurityEvent',
    'SecurityMonitor',
    'set_monitor',
    'Severity',
    'SinkDispatcher',
    'ThreatDetectionEngine',
]

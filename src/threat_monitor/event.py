# src/threat_monitor/event.py
"""
Event data structures for the threat monitoring system.

This module defines the SecurityEvent record produced by enrichment, the
PartialEvent description callers hand to the monitor, and the RequestContext
snapshot of the HTTP request that triggered the event.
"""

import copy
import secrets
import string
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class EventKind(str, Enum):
    """Closed set of security event categories."""
    AUTH_FAILURE = "auth_failure"
    AUTH_SUCCESS = "auth_success"
    AUTHZ_FAILURE = "authz_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    INJECTION_ATTEMPT = "injection_attempt"
    ACCOUNT_LOCKOUT = "account_lockout"
    PASSWORD_RESET = "password_reset"
    SESSION_ANOMALY = "session_anomaly"
    FILE_UPLOAD = "file_upload"
    API_ABUSE = "api_abuse"
    CONFIG_CHANGE = "config_change"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_event_id() -> str:
    """Build a time-based event id with a random base36 suffix."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"rv_sec_{int(time.time() * 1000)}_{suffix}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Geolocation:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


@dataclass(frozen=True)
class DeviceInfo:
    type: str = "desktop"
    os: str = "Unknown"
    browser: str = "Unknown"


@dataclass
class RequestContext:
    """
    Snapshot of the HTTP request an event is reported for.

    Attributes:
        method: HTTP method ("GET", "POST", ...)
        url: Request path including the query string
        headers: Raw request headers; credential headers are stripped
                 before anything reaches an event
        query: Parsed query parameters
        body: Parsed request body, if the caller captured it
        params: Route parameters
        ip: Client address
        user_agent: Client user agent, falls back to the header
        user_id: Authenticated principal, if any
        session_id: Session of the authenticated principal, if any
    """
    method: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)
    query: Optional[Any] = None
    body: Optional[Any] = None
    params: Optional[Any] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def header(self, name: str) -> Optional[Any]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in (self.headers or {}).items():
            if str(key).lower() == wanted:
                return value
        return None


@dataclass
class PartialEvent:
    """
    Caller-side description of something that happened.

    Every field is optional; enrichment fills in defaults, identity and
    request context.

    Example:
        >>> PartialEvent(kind=EventKind.AUTH_FAILURE,
        ...              severity=Severity.MEDIUM,
        ...              details={"endpoint": "/api/login"})
    """
    kind: Optional[EventKind] = None
    severity: Optional[Severity] = None
    outcome: Optional[Outcome] = None
    details: Dict[str, Any] = field(default_factory=dict)
    risk_score: Optional[float] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PartialEvent":
        """Build a partial event from a loosely-typed mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        if "kind" in values:
            values["kind"] = EventKind(values["kind"])
        if "severity" in values:
            values["severity"] = Severity(values["severity"])
        if "outcome" in values:
            values["outcome"] = Outcome(values["outcome"])
        return cls(**values)


@dataclass(frozen=True)
class SecurityEvent:
    """
    Fully enriched security event.

    Instances are immutable: the dataclass is frozen and ``details`` is
    exposed as a read-only mapping over a private deep copy, so nothing
    downstream of enrichment can alter a dispatched event.
    """
    id: str
    timestamp: str
    kind: EventKind
    severity: Severity
    source: str
    ip: str
    user_agent: str
    outcome: Outcome
    details: Mapping[str, Any]
    risk_score: float
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    geolocation: Optional[Geolocation] = None
    device_info: Optional[DeviceInfo] = None

    def __post_init__(self):
        object.__setattr__(self, "details", MappingProxyType(copy.deepcopy(dict(self.details))))

    @property
    def is_derived(self) -> bool:
        """True for events emitted by a detector rather than reported by a caller."""
        return "detector" in self.details

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable representation used by sinks and the audit log."""
        record: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "event_type": self.kind.value,
            "severity": self.severity.value,
            "source": self.source,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "outcome": self.outcome.value,
            "details": copy.deepcopy(dict(self.details)),
            "risk_score": self.risk_score,
        }
        for name in ("user_id", "session_id", "resource", "action"):
            value = getattr(self, name)
            if value is not None:
                record[name] = value
        if self.geolocation is not None:
            record["geolocation"] = {
                k: v for k, v in vars(self.geolocation).items() if v is not None
            }
        if self.device_info is not None:
            record["device_info"] = dict(vars(self.device_info))
        return record

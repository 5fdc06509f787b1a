# src/threat_monitor/risk.py
"""
Risk scoring for security events.

Maps an event kind and severity to a bounded 0-10 score. The function is
stateless so it can be used and tested without any request context.
"""

from typing import Union

from .event import EventKind, Severity

MAX_RISK_SCORE = 10.0
MIN_RISK_SCORE = 0.0
DEFAULT_BASE_SCORE = 1.0

BASE_SCORES = {
    EventKind.AUTH_FAILURE.value: 3.0,
    EventKind.BRUTE_FORCE_ATTEMPT.value: 8.0,
    EventKind.INJECTION_ATTEMPT.value: 9.0,
    EventKind.PRIVILEGE_ESCALATION.value: 9.5,
    EventKind.SUSPICIOUS_ACTIVITY.value: 5.0,
    EventKind.API_ABUSE.value: 6.0,
}

SEVERITY_MULTIPLIERS = {
    Severity.LOW.value: 0.5,
    Severity.MEDIUM.value: 1.0,
    Severity.HIGH.value: 1.5,
    Severity.CRITICAL.value: 2.0,
}


def _value(item: Union[str, EventKind, Severity, None]) -> str:
    if item is None:
        return ""
    return item.value if hasattr(item, "value") else str(item)


def clamp(value: float) -> float:
    """Clamp a score into the [0, 10] range."""
    return max(MIN_RISK_SCORE, min(MAX_RISK_SCORE, float(value)))


def score(kind: Union[str, EventKind, None], severity: Union[str, Severity, None]) -> float:
    """
    Compute the risk score of an event.

    Args:
        kind: Event kind (enum member or its string value)
        severity: Severity (enum member or its string value)

    Returns:
        base(kind) * multiplier(severity), capped at 10.0

    Example:
        >>> score("injection_attempt", "high")
        10.0
        >>> score("unknown_kind", "low")
        0.5
    """
    base = BASE_SCORES.get(_value(kind), DEFAULT_BASE_SCORE)
    multiplier = SEVERITY_MULTIPLIERS.get(_value(severity), 1.0)
    return min(MAX_RISK_SCORE, base * multiplier)

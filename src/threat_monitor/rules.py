# src/threat_monitor/rules.py
"""
Threat detection rules engine.

This module contains the stateful detectors that inspect enriched security
events for brute force attempts, API abuse, injection payloads, automated
clients, high-risk locations and session anomalies. A detector that fires
produces a secondary event description which the monitor feeds back into
the pipeline.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List

from .event import EventKind, Outcome, PartialEvent, SecurityEvent, Severity
from .patterns import match_injection, match_user_agent
from .windows import FailureCounterStore, SlidingWindowStore, SuspiciousIPSet

logger = logging.getLogger(__name__)


class DetectionConfig:
    """Configuration constants for threat detection rules."""

    # Brute force detection
    BRUTE_FORCE_LIMIT = 5
    BRUTE_FORCE_WINDOW_SECONDS = 5 * 60

    # API rate abuse
    RATE_LIMIT_MAX_REQUESTS = 100
    RATE_LIMIT_WINDOW_SECONDS = 60

    # Injection evidence
    SUSPICIOUS_CONTENT_MAX_CHARS = 500

    # Bot-like behavior signals
    BOT_FAST_REQUEST_MS = 100
    BOT_SHORT_USER_AGENT = 10
    BOT_HIGH_REQUEST_COUNT = 50
    BOT_MIN_SIGNALS = 2

    # Geography
    HIGH_RISK_COUNTRIES = frozenset({"CN", "RU", "KP", "IR"})

    # Sessions
    MAX_CONCURRENT_SESSIONS = 3

    # Fixed risk scores carried by detector-emitted events
    RISK_BRUTE_FORCE = 8.0
    RISK_API_ABUSE = 6.0
    RISK_INJECTION = 8.5
    RISK_UNUSUAL_USER_AGENT = 5.0
    RISK_BOT_LIKE = 6.0
    RISK_HIGH_RISK_COUNTRY = 5.5
    RISK_SESSION_ANOMALY = 7.0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ThreatDetectionEngine:
    """
    Runs every applicable detector against an enriched event.

    The engine owns the windowed detection state: failed-login counters,
    per-IP request windows and the suspicious IP set. All of it is safe to
    mutate from several worker threads at once.

    Derived events (those already produced by a detector) are skipped by
    every detector, which keeps secondary emission one level deep.

    Example:
        >>> engine = ThreatDetectionEngine()
        >>> secondaries = engine.evaluate(event)
        >>> "10.0.0.1" in engine.suspicious_ips
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.failed_logins = FailureCounterStore(
            DetectionConfig.BRUTE_FORCE_WINDOW_SECONDS, clock=clock)
        self.request_windows = SlidingWindowStore(
            DetectionConfig.RATE_LIMIT_WINDOW_SECONDS, clock=clock)
        self.suspicious_ips = SuspiciousIPSet()

    @staticmethod
    def _secondary(event: SecurityEvent, detector: str, kind: EventKind,
                   severity: Severity, outcome: Outcome, risk_score: float,
                   evidence: Dict[str, Any]) -> PartialEvent:
        """Build a derived event carrying the trigger's identity and details."""
        details = dict(event.details)
        details.update(evidence)
        details["detector"] = detector
        details["trigger_event_id"] = event.id
        return PartialEvent(
            kind=kind,
            severity=severity,
            outcome=outcome,
            details=details,
            risk_score=risk_score,
            ip=event.ip,
            user_agent=event.user_agent,
            user_id=event.user_id,
            session_id=event.session_id,
        )

    def _detect_brute_force(self, event: SecurityEvent) -> List[PartialEvent]:
        """Detect repeated authentication failures for one ip/user pair."""
        if event.kind != EventKind.AUTH_FAILURE:
            return []

        key = f"{event.ip}:{event.user_id or 'anonymous'}"
        attempts = self.failed_logins.increment(key)

        # Counter only resets when its window expires, so each further
        # failure past the limit fires again.
        if attempts >= DetectionConfig.BRUTE_FORCE_LIMIT:
            self.suspicious_ips.add(event.ip)
            logger.warning("Brute force suspected for %s (%d attempts)", key, attempts)
            return [self._secondary(
                event, "brute_force", EventKind.BRUTE_FORCE_ATTEMPT,
                Severity.HIGH, Outcome.FAILURE, DetectionConfig.RISK_BRUTE_FORCE,
                {"attempts": attempts, "time_window": "5 minutes"},
            )]
        return []

    def _detect_rate_limit_violation(self, event: SecurityEvent) -> List[PartialEvent]:
        """Detect more than the allowed number of requests per minute from one IP."""
        request_count = self.request_windows.record(event.ip)
        if request_count > DetectionConfig.RATE_LIMIT_MAX_REQUESTS:
            return [self._secondary(
                event, "rate_limit", EventKind.API_ABUSE,
                Severity.MEDIUM, Outcome.WARNING, DetectionConfig.RISK_API_ABUSE,
                {
                    "request_count": request_count,
                    "time_window": "1 minute",
                    "threshold": DetectionConfig.RATE_LIMIT_MAX_REQUESTS,
                },
            )]
        return []

    def _detect_injection(self, event: SecurityEvent) -> List[PartialEvent]:
        """Scan query, body and params for injection signatures."""
        inputs = {name: event.details.get(name) for name in ("query", "body", "params")}
        if not any(inputs.values()):
            return []

        content = json.dumps(
            {k: v for k, v in inputs.items() if v is not None},
            separators=(",", ":"), ensure_ascii=False, default=str,
        )
        signature = match_injection(content)
        if signature is None:
            return []

        return [self._secondary(
            event, "injection", EventKind.INJECTION_ATTEMPT,
            Severity.HIGH, Outcome.FAILURE, DetectionConfig.RISK_INJECTION,
            {
                "pattern": signature.pattern,
                "pattern_category": signature.category,
                "suspicious_content": content[:DetectionConfig.SUSPICIOUS_CONTENT_MAX_CHARS],
            },
        )]

    @staticmethod
    def bot_signals(event: SecurityEvent) -> Dict[str, bool]:
        request_time = event.details.get("request_time")
        request_count = event.details.get("request_count")
        return {
            "fast_request": _is_number(request_time)
            and request_time < DetectionConfig.BOT_FAST_REQUEST_MS,
            "short_user_agent": len(event.user_agent) < DetectionConfig.BOT_SHORT_USER_AGENT,
            "missing_referer": not event.details.get("referer"),
            "high_request_count": _is_number(request_count)
            and request_count > DetectionConfig.BOT_HIGH_REQUEST_COUNT,
        }

    def _detect_anomalous_behavior(self, event: SecurityEvent) -> List[PartialEvent]:
        """Flag automation user agents and bot-like request profiles."""
        findings = []

        if match_user_agent(event.user_agent):
            findings.append(self._secondary(
                event, "anomaly", EventKind.SUSPICIOUS_ACTIVITY,
                Severity.MEDIUM, Outcome.WARNING, DetectionConfig.RISK_UNUSUAL_USER_AGENT,
                {"anomaly": "unusual_user_agent", "user_agent": event.user_agent},
            ))

        signals = self.bot_signals(event)
        if sum(signals.values()) >= DetectionConfig.BOT_MIN_SIGNALS:
            findings.append(self._secondary(
                event, "anomaly", EventKind.SUSPICIOUS_ACTIVITY,
                Severity.MEDIUM, Outcome.WARNING, DetectionConfig.RISK_BOT_LIKE,
                {
                    "anomaly": "bot_like_behavior",
                    "bot_signals": sorted(k for k, v in signals.items() if v),
                },
            ))
        return findings

    def _detect_geographic_anomaly(self, event: SecurityEvent) -> List[PartialEvent]:
        if not event.user_id or event.geolocation is None:
            return []
        country = event.geolocation.country
        if country and country.upper() in DetectionConfig.HIGH_RISK_COUNTRIES:
            return [self._secondary(
                event, "geographic", EventKind.SUSPICIOUS_ACTIVITY,
                Severity.MEDIUM, Outcome.WARNING, DetectionConfig.RISK_HIGH_RISK_COUNTRY,
                {"anomaly": "high_risk_country", "country": country},
            )]
        return []

    def _detect_session_anomaly(self, event: SecurityEvent) -> List[PartialEvent]:
        if not event.session_id:
            return []
        concurrency = event.details.get("session_concurrency")
        if _is_number(concurrency) and concurrency > DetectionConfig.MAX_CONCURRENT_SESSIONS:
            return [self._secondary(
                event, "session", EventKind.SESSION_ANOMALY,
                Severity.HIGH, Outcome.WARNING, DetectionConfig.RISK_SESSION_ANOMALY,
                {"anomaly": "multiple_concurrent_sessions", "session_concurrency": concurrency},
            )]
        return []

    def evaluate(self, event: SecurityEvent) -> List[PartialEvent]:
        """
        Evaluate an event against all detection rules.

        Args:
            event: Enriched security event

        Returns:
            Descriptions of the secondary events to emit (possibly empty)
        """
        if event.is_derived:
            return []

        secondaries: List[PartialEvent] = []
        for detector in (
            self._detect_brute_force,
            self._detect_rate_limit_violation,
            self._detect_injection,
            self._detect_anomalous_behavior,
            self._detect_geographic_anomaly,
            self._detect_session_anomaly,
        ):
            try:
                secondaries.extend(detector(event))
            except Exception:
                # A broken rule must not stop the original event from shipping
                logger.exception("Detector %s failed on event %s", detector.__name__, event.id)
        return secondaries

    def is_suspicious(self, ip: str) -> bool:
        return ip in self.suspicious_ips

# src/threat_monitor/enrichment.py
"""
Event enrichment: turns a PartialEvent plus request context into a complete,
immutable SecurityEvent.

Enrichment never raises. Optional lookups that fail leave their field unset.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from .errors import EnrichmentError
from .event import (DeviceInfo, EventKind, Geolocation, Outcome, PartialEvent,
                    RequestContext, SecurityEvent, Severity, generate_event_id,
                    utc_now_iso)
from .geolocation import GeoLocator, NullGeoLocator
from .risk import clamp, score

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})

# (token, label) pairs, checked in order. Android and iOS user agents also
# mention Linux / Mac OS X, so they are tested first.
_OS_TOKENS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)

# Edge and Chrome user agents carry the Chrome and Safari tokens too.
_BROWSER_TOKENS = (
    ("Edg", "Edge"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)

UNKNOWN = "unknown"


def sanitize_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Copy a header map without credential-bearing headers (case-insensitive)."""
    if not headers:
        return {}
    return {
        str(name).lower(): value
        for name, value in headers.items()
        if str(name).lower() not in SENSITIVE_HEADERS
    }


def _match_token(user_agent: str, tokens) -> str:
    for token, label in tokens:
        if token in user_agent:
            return label
    return "Unknown"


def parse_user_agent(user_agent: str) -> DeviceInfo:
    """Derive coarse device information from a user agent string."""
    return DeviceInfo(
        type="mobile" if "Mobile" in user_agent else "desktop",
        os=_match_token(user_agent, _OS_TOKENS),
        browser=_match_token(user_agent, _BROWSER_TOKENS),
    )


class EventEnricher:
    """
    Builds SecurityEvents from partial descriptions.

    Args:
        source: Identifier of the emitting service instance
        geolocator: Lookup collaborator for ip -> location
    """

    def __init__(self, source: str = "receipt-vault-backend",
                 geolocator: Optional[GeoLocator] = None) -> None:
        self.source = source
        self.geolocator = geolocator or NullGeoLocator()

    def _resolve_geolocation(self, ip: str) -> Optional[Geolocation]:
        if ip == UNKNOWN:
            return None
        try:
            return self.geolocator.resolve(ip)
        except Exception as e:
            logger.warning("Geolocation lookup failed for %s: %s", ip, e)
            return None

    def _resolve_device_info(self, user_agent: str) -> Optional[DeviceInfo]:
        try:
            return parse_user_agent(user_agent)
        except Exception as e:
            logger.warning("User agent parsing failed: %s", e)
            return None

    @staticmethod
    def _build_details(partial: PartialEvent,
                       context: Optional[RequestContext]) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if context is not None:
            request_details = {
                "method": context.method,
                "url": context.url,
                "headers": sanitize_headers(context.headers),
                "query": context.query,
                "referer": context.header("referer"),
            }
            details.update({k: v for k, v in request_details.items() if v is not None})

        # Caller-supplied details win on collision
        details.update(partial.details or {})

        if isinstance(details.get("headers"), Mapping):
            details["headers"] = sanitize_headers(details["headers"])
        for name in list(details):
            if str(name).lower() in SENSITIVE_HEADERS:
                del details[name]
        return details

    def _build(self, partial: PartialEvent,
               context: Optional[RequestContext]) -> SecurityEvent:
        kind = EventKind(partial.kind) if partial.kind else EventKind.SUSPICIOUS_ACTIVITY
        severity = Severity(partial.severity) if partial.severity else Severity.MEDIUM
        outcome = Outcome(partial.outcome) if partial.outcome else Outcome.WARNING

        try:
            details = self._build_details(partial, context)
        except Exception as e:
            raise EnrichmentError(f"could not merge request details: {e}") from e

        ctx = context or RequestContext()
        ip = partial.ip or ctx.ip or details.get("ip") or UNKNOWN
        user_agent = (partial.user_agent or ctx.user_agent
                      or ctx.header("user-agent") or UNKNOWN)

        if partial.risk_score is not None:
            risk_score = clamp(partial.risk_score)
        else:
            risk_score = score(kind, severity)

        return SecurityEvent(
            id=generate_event_id(),
            timestamp=utc_now_iso(),
            kind=kind,
            severity=severity,
            source=self.source,
            ip=str(ip),
            user_agent=str(user_agent),
            outcome=outcome,
            details=details,
            risk_score=risk_score,
            user_id=partial.user_id or ctx.user_id,
            session_id=partial.session_id or ctx.session_id,
            resource=partial.resource,
            action=partial.action,
            geolocation=self._resolve_geolocation(str(ip)),
            device_info=self._resolve_device_info(str(user_agent)),
        )

    def enrich(self, partial: Optional[PartialEvent] = None,
               context: Optional[RequestContext] = None) -> SecurityEvent:
        """
        Build a complete SecurityEvent.

        Falls back to an event without request details if the request
        context cannot be merged, so callers always get an event back.
        """
        partial = partial or PartialEvent()
        try:
            return self._build(partial, context)
        except (EnrichmentError, ValueError, TypeError) as e:
            logger.warning("Degraded enrichment for %s event: %s",
                           getattr(partial.kind, "value", partial.kind), e)
            fallback = PartialEvent(
                kind=partial.kind if isinstance(partial.kind, EventKind) else None,
                severity=partial.severity if isinstance(partial.severity, Severity) else None,
                outcome=partial.outcome if isinstance(partial.outcome, Outcome) else None,
                risk_score=partial.risk_score if isinstance(partial.risk_score, (int, float)) else None,
                ip=partial.ip,
                user_id=partial.user_id,
                session_id=partial.session_id,
            )
            return self._build(fallback, None)

# src/threat_monitor/errors.py
"""Exception types raised inside the threat monitoring pipeline."""


class ThreatMonitorError(Exception):
    """Base class for all threat monitor errors."""


class EnrichmentError(ThreatMonitorError):
    """An optional enrichment step (geolocation, device parsing) failed."""


class SinkError(ThreatMonitorError):
    """Delivery of an event to one external sink failed."""

    def __init__(self, sink: str, message: str) -> None:
        super().__init__(f"{sink}: {message}")
        self.sink = sink

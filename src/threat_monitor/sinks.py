# src/threat_monitor/sinks.py
"""
Delivery of finished security events to external SIEM backends.

Each backend is a SinkAdapter that knows its endpoint, credential header and
payload shape. The SinkDispatcher fans an event out to every enabled adapter
in parallel; one failing backend never affects the others, and the local
audit log is written once all of them have settled.
"""

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .config import MonitorSettings
from .errors import SinkError
from .event import SecurityEvent
from .log_writer import AuditLog

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


@dataclass
class SinkResult:
    """Outcome of one delivery attempt."""
    sink: str
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    elapsed: float = 0.0


class SinkAdapter:
    """
    Uniform ``send(event) -> SinkResult`` interface over one backend.

    Subclasses implement ``build_request``; transport, timeout and error
    reporting live here. ``http`` is anything with a requests-style
    ``post(url, json=..., headers=..., timeout=...)``.
    """

    name = "sink"

    def __init__(self, endpoint: Optional[str], timeout: float = DEFAULT_TIMEOUT,
                 http: Any = None) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.http = http or requests

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    def build_request(self, event: SecurityEvent) -> Tuple[str, Any, Dict[str, str]]:
        """Return (url, json_body, headers) for this backend."""
        raise NotImplementedError

    def _post(self, event: SecurityEvent) -> int:
        url, body, headers = self.build_request(event)
        headers = {"Content-Type": "application/json", **headers}
        try:
            resp = self.http.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise SinkError(self.name, f"timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise SinkError(self.name, str(e)) from e
        if resp.status_code >= 400:
            raise SinkError(self.name, f"responded {resp.status_code}: {resp.text[:200]}")
        return resp.status_code

    def send(self, event: SecurityEvent) -> SinkResult:
        started = time.monotonic()
        try:
            status = self._post(event)
        except SinkError as e:
            logger.error("Failed to send event %s to %s: %s", event.id, self.name, e)
            return SinkResult(self.name, False, error=str(e),
                              elapsed=time.monotonic() - started)
        return SinkResult(self.name, True, status_code=status,
                          elapsed=time.monotonic() - started)


class SplunkSink(SinkAdapter):
    """Splunk HTTP Event Collector."""

    name = "splunk"
    index = "receipt_vault_security"
    sourcetype = "security_event"

    def __init__(self, endpoint, token=None, **kwargs) -> None:
        super().__init__(endpoint, **kwargs)
        self.token = token

    def build_request(self, event):
        body = {"event": {**event.to_dict(), "index": self.index,
                          "sourcetype": self.sourcetype}}
        return self.endpoint, body, {"Authorization": f"Splunk {self.token}"}


class ElasticsearchSink(SinkAdapter):
    """Elasticsearch document write into a per-month index."""

    name = "elasticsearch"
    index_prefix = "receipt-vault-security"

    def __init__(self, endpoint, api_key=None, **kwargs) -> None:
        super().__init__(endpoint, **kwargs)
        self.api_key = api_key

    def index_for(self, event: SecurityEvent) -> str:
        return f"{self.index_prefix}-{event.timestamp[:7]}"

    def build_request(self, event):
        url = f"{self.endpoint.rstrip('/')}/{self.index_for(event)}/_doc"
        return url, event.to_dict(), {"Authorization": f"ApiKey {self.api_key}"}


class SentinelSink(SinkAdapter):
    """Azure Sentinel data collector; expects a JSON array."""

    name = "sentinel"
    log_type = "ReceiptVaultSecurityEvent"

    def __init__(self, endpoint, token=None, **kwargs) -> None:
        super().__init__(endpoint, **kwargs)
        self.token = token

    def build_request(self, event):
        headers = {"Authorization": f"Bearer {self.token}", "Log-Type": self.log_type}
        return self.endpoint, [event.to_dict()], headers


class SumoLogicSink(SinkAdapter):
    """Sumo Logic hosted HTTP collector."""

    name = "sumologic"
    category = "receipt-vault/security"

    def build_request(self, event):
        return self.endpoint, event.to_dict(), {"X-Sumo-Category": self.category}


class DatadogSink(SinkAdapter):
    """Datadog log intake; the event travels JSON-encoded in ``message``."""

    name = "datadog"
    ddsource = "receipt-vault"
    service = "receipt-vault-security"

    def __init__(self, endpoint, api_key=None, env="development",
                 hostname="unknown", source_service="receipt-vault-backend",
                 **kwargs) -> None:
        super().__init__(endpoint, **kwargs)
        self.api_key = api_key
        self.env = env
        self.hostname = hostname
        self.source_service = source_service

    def build_request(self, event):
        body = {
            "ddsource": self.ddsource,
            "ddtags": f"env:{self.env},service:{self.source_service}",
            "hostname": self.hostname,
            "message": json.dumps(event.to_dict()),
            "service": self.service,
        }
        return self.endpoint, body, {"DD-API-KEY": self.api_key or ""}


def build_sinks(settings: MonitorSettings, http: Any = None) -> List[SinkAdapter]:
    """Create one adapter per supported backend; unset endpoints stay disabled."""
    timeout = settings.sink_timeout_seconds
    return [
        SplunkSink(settings.splunk_hec_endpoint, token=settings.splunk_hec_token,
                   timeout=timeout, http=http),
        ElasticsearchSink(settings.elasticsearch_endpoint,
                          api_key=settings.elasticsearch_api_key,
                          timeout=timeout, http=http),
        SentinelSink(settings.azure_sentinel_endpoint, token=settings.azure_sentinel_token,
                     timeout=timeout, http=http),
        SumoLogicSink(settings.sumo_logic_endpoint, timeout=timeout, http=http),
        DatadogSink(settings.datadog_logs_endpoint, api_key=settings.datadog_api_key,
                    env=settings.app_env, hostname=settings.hostname,
                    source_service=settings.service_source,
                    timeout=timeout, http=http),
    ]


class _SinkLane:
    """
    Delivery threads owned by a single sink.

    At most ``max_in_flight`` calls run at once and each one starts as soon
    as it is submitted, so a stalled backend can only exhaust its own lane.
    """

    def __init__(self, sink: SinkAdapter, max_in_flight: int) -> None:
        self.sink = sink
        self.max_in_flight = max_in_flight
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._executor = ThreadPoolExecutor(max_workers=max_in_flight,
                                            thread_name_prefix=f"Sink-{sink.name}")

    def submit(self, event: SecurityEvent) -> Optional[Future]:
        """Start delivering ``event``, or return None while the lane is full."""
        if not self._slots.acquire(blocking=False):
            return None
        try:
            future = self._executor.submit(SinkDispatcher._safe_send, self.sink, event)
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def shutdown(self, wait_for_pending: bool) -> None:
        self._executor.shutdown(wait=wait_for_pending)


class SinkDispatcher:
    """
    Parallel, best-effort fan-out of events to the configured sinks.

    Every enabled sink gets its own lane of delivery threads. A sink whose
    lane is still full of unfinished calls is reported as ``busy`` for the
    new event instead of queueing behind them.

    Args:
        sinks: Adapters to deliver to; disabled ones are skipped
        audit_log: Always-on local fallback, written after every dispatch
        timeout: Per-sink deadline in seconds, counted from the start of the call
        max_in_flight: Concurrent calls allowed per sink
    """

    def __init__(self, sinks: Sequence[SinkAdapter], audit_log: Optional[AuditLog] = None,
                 timeout: float = DEFAULT_TIMEOUT, max_in_flight: int = 4) -> None:
        self.sinks = list(sinks)
        self.audit_log = audit_log
        self.timeout = timeout
        self._lanes = [_SinkLane(sink, max_in_flight) for sink in self.sinks if sink.enabled]

    @property
    def enabled_sinks(self) -> List[SinkAdapter]:
        return [lane.sink for lane in self._lanes]

    @staticmethod
    def _safe_send(sink: SinkAdapter, event: SecurityEvent) -> SinkResult:
        try:
            return sink.send(event)
        except Exception as e:
            logger.error("Sink %s raised while sending %s: %s", sink.name, event.id, e)
            return SinkResult(sink.name, False, error=str(e))

    def dispatch(self, event: SecurityEvent) -> Dict[str, SinkResult]:
        """Deliver one event everywhere; never raises."""
        results: Dict[str, SinkResult] = {}
        futures: Dict[Future, SinkAdapter] = {}
        for lane in self._lanes:
            future = lane.submit(event)
            if future is None:
                logger.error("Sink %s has %d calls in flight, skipping event %s",
                             lane.sink.name, lane.max_in_flight, event.id)
                results[lane.sink.name] = SinkResult(lane.sink.name, False, error="busy")
            else:
                futures[future] = lane.sink

        if futures:
            done, pending = wait(futures, timeout=self.timeout)
            for future in done:
                result = future.result()
                results[result.sink] = result
            for future in pending:
                sink = futures[future]
                logger.error("Sink %s did not settle within %.1fs for event %s",
                             sink.name, self.timeout, event.id)
                results[sink.name] = SinkResult(sink.name, False, error="timeout",
                                                elapsed=self.timeout)

        if self.audit_log is not None:
            self.audit_log.write(event)
        return results

    def shutdown(self, wait_for_pending: bool = True) -> None:
        for lane in self._lanes:
            lane.shutdown(wait_for_pending)

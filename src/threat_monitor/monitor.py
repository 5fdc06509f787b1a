# src/threat_monitor/monitor.py
"""
Queue-fed security event pipeline.

This module implements the SecurityMonitor, which accepts event reports from
request handlers without blocking them and processes each report on a small
pool of worker threads: enrichment, threat detection, then dispatch to the
external sinks and the local audit log. Events emitted by detectors are
pushed back onto the same queue.
"""

import logging
import threading
import time
from queue import Empty, Queue
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from .config import MonitorSettings
from .enrichment import EventEnricher
from .event import PartialEvent, RequestContext, SecurityEvent
from .geolocation import GeoLocator, IpApiGeoLocator, NullGeoLocator
from .log_writer import AuditLog
from .rules import ThreatDetectionEngine
from .sinks import SinkDispatcher, build_sinks

logger = logging.getLogger(__name__)

PartialLike = Union[PartialEvent, Mapping[str, Any], None]


class SecurityMonitor:
    """
    Security event pipeline with a worker-thread pool.

    This class manages:
    - The event queue shared by callers and detectors
    - Worker threads running enrichment -> detection -> dispatch
    - The detection engine and its windowed state
    - Delivery to external sinks and the local audit log

    ``log_security_event`` only enqueues and never raises, so instrumenting
    a request can neither slow it down nor fail it.

    Example:
        >>> monitor = SecurityMonitor()
        >>> monitor.log_security_event(
        ...     PartialEvent(kind=EventKind.AUTH_FAILURE),
        ...     RequestContext(ip="203.0.113.7", url="/api/login"))
        >>> monitor.flush()
        >>> monitor.suspicious_ips
    """

    def __init__(self,
                 settings: Optional[MonitorSettings] = None,
                 enricher: Optional[EventEnricher] = None,
                 engine: Optional[ThreatDetectionEngine] = None,
                 dispatcher: Optional[SinkDispatcher] = None,
                 geolocator: Optional[GeoLocator] = None,
                 worker_count: Optional[int] = None) -> None:
        self.settings = settings or MonitorSettings()

        if geolocator is None:
            if self.settings.geoip_enabled:
                geolocator = IpApiGeoLocator(self.settings.geoip_url,
                                             timeout=self.settings.sink_timeout_seconds)
            else:
                geolocator = NullGeoLocator()

        self.enricher = enricher or EventEnricher(self.settings.service_source, geolocator)
        self.engine = engine or ThreatDetectionEngine()
        self.dispatcher = dispatcher or SinkDispatcher(
            build_sinks(self.settings),
            AuditLog(self.settings.audit_log_path),
            timeout=self.settings.sink_timeout_seconds,
        )
        self.worker_count = max(1, worker_count or self.settings.worker_count)

        self._queue: Queue = Queue()
        self._workers: List[threading.Thread] = []
        self._workers_lock = threading.Lock()
        self._shutdown_event = threading.Event()

        self._stats_lock = threading.Lock()
        self._stats = {"received": 0, "processed": 0, "secondary": 0, "errors": 0}

    def _bump(self, name: str, n: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += n

    def _ensure_workers(self) -> None:
        """Start the worker threads on first use."""
        if self._workers:
            return
        with self._workers_lock:
            if self._workers:
                return
            for i in range(self.worker_count):
                worker = threading.Thread(
                    target=self._worker_loop,
                    name=f"SecurityEventWorker-{i}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)

    def _worker_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                partial, context = self._queue.get(timeout=0.1)
            except Empty:
                continue
            try:
                self.process(partial, context)
            except Exception:
                self._bump("errors")
                logger.exception("Failed to process security event")
            finally:
                self._queue.task_done()

    @staticmethod
    def _to_partial(partial: PartialLike) -> PartialEvent:
        if partial is None:
            return PartialEvent()
        if isinstance(partial, PartialEvent):
            return partial
        return PartialEvent.from_dict(partial)

    def log_security_event(self, partial: PartialLike = None,
                           context: Optional[RequestContext] = None) -> None:
        """
        Report security-relevant activity.

        Args:
            partial: What happened; a PartialEvent or an equivalent mapping
            context: The request the activity belongs to, if any

        Never raises: malformed input is logged and dropped.
        """
        try:
            if self._shutdown_event.is_set():
                logger.warning("Security monitor is shut down; dropping event")
                return
            self._queue.put((self._to_partial(partial), context))
            self._bump("received")
            self._ensure_workers()
        except Exception as e:
            logger.error("Failed to log security event: %s", e)

    def process(self, partial: PartialEvent,
                context: Optional[RequestContext] = None) -> SecurityEvent:
        """
        Run one report through the pipeline synchronously.

        Secondary events produced by the detectors are queued, not processed
        inline.

        Returns:
            The enriched event that was dispatched
        """
        event = self.enricher.enrich(partial, context)

        secondaries = self.engine.evaluate(event)
        for secondary in secondaries:
            self._queue.put((secondary, None))
        if secondaries:
            self._bump("secondary", len(secondaries))
            self._ensure_workers()

        self.dispatcher.dispatch(event)
        self._bump("processed")
        return event

    def flush(self, timeout: float = 10.0) -> bool:
        """
        Wait until every queued event, including secondaries, is processed.

        Returns:
            True if the queue drained, False if the timeout elapsed first
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._queue.unfinished_tasks == 0:
                return True
            time.sleep(0.01)
        return self._queue.unfinished_tasks == 0

    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def suspicious_ips(self) -> Set[str]:
        return self.engine.suspicious_ips.snapshot()

    def is_suspicious(self, ip: str) -> bool:
        return self.engine.is_suspicious(ip)

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def shutdown(self, timeout: float = 5.0) -> bool:
        """
        Gracefully stop the monitor, draining queued events first.

        Returns:
            True if shutdown completed cleanly, False if timeout occurred
        """
        drained = self.flush(timeout)
        self._shutdown_event.set()

        for worker in self._workers:
            worker.join(timeout=timeout / max(1, len(self._workers)))
        self.dispatcher.shutdown(wait_for_pending=False)

        return drained and all(not w.is_alive() for w in self._workers)

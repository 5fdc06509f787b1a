# src/threat_monitor/middleware.py
"""
HTTP instrumentation for FastAPI / Starlette applications.

After each response the middleware reports authentication outcomes, data
modifications and very slow requests to the security monitor. Reporting
only enqueues, so the response is never delayed or failed by it.
"""

import logging
import time
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .event import EventKind, Outcome, PartialEvent, RequestContext, Severity
from .instrumentation import get_monitor
from .monitor import SecurityMonitor

logger = logging.getLogger(__name__)

SLOW_RESPONSE_MS = 10_000
AUTH_PATH_MARKERS = ("/auth/", "/login")


def request_context(request: Request) -> RequestContext:
    """Snapshot the parts of a request that enrichment needs."""
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    state = request.state
    return RequestContext(
        method=request.method,
        url=url,
        headers=dict(request.headers),
        query=dict(request.query_params) or None,
        params=dict(request.path_params) or None,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        user_id=getattr(state, "user_id", None),
        session_id=getattr(state, "session_id", None),
    )


class SecurityEventMiddleware(BaseHTTPMiddleware):
    """
    Reports security-relevant request outcomes.

    - Requests to authentication endpoints: auth_success on 200,
      auth_failure otherwise
    - Successful non-GET requests: data_modification
    - Responses slower than 10 seconds: suspicious_activity

    Args:
        app: The ASGI application
        monitor: Monitor to report to; defaults to the process-wide one
    """

    def __init__(self, app, monitor: Optional[SecurityMonitor] = None) -> None:
        super().__init__(app)
        self._monitor = monitor

    @property
    def monitor(self) -> SecurityMonitor:
        return self._monitor or get_monitor()

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        response_time = int((time.monotonic() - started) * 1000)

        try:
            self._report(request, response.status_code, response_time)
        except Exception as e:
            logger.error("Security instrumentation failed for %s: %s", request.url.path, e)
        return response

    def _report(self, request: Request, status_code: int, response_time: int) -> None:
        context = request_context(request)
        details = {
            "endpoint": context.url,
            "method": request.method,
            "status_code": status_code,
            "response_time": response_time,
        }

        if any(marker in request.url.path for marker in AUTH_PATH_MARKERS):
            succeeded = status_code == 200
            self.monitor.log_security_event(PartialEvent(
                kind=EventKind.AUTH_SUCCESS if succeeded else EventKind.AUTH_FAILURE,
                severity=Severity.LOW if succeeded else Severity.MEDIUM,
                outcome=Outcome.SUCCESS if succeeded else Outcome.FAILURE,
                details=dict(details),
            ), context)

        if request.method != "GET" and status_code < 400:
            self.monitor.log_security_event(PartialEvent(
                kind=EventKind.DATA_MODIFICATION,
                severity=Severity.LOW,
                outcome=Outcome.SUCCESS,
                details=dict(details),
            ), context)

        if response_time > SLOW_RESPONSE_MS:
            self.monitor.log_security_event(PartialEvent(
                kind=EventKind.SUSPICIOUS_ACTIVITY,
                severity=Severity.MEDIUM,
                outcome=Outcome.WARNING,
                details={
                    "anomaly": "high_response_time",
                    "response_time": response_time,
                    "endpoint": context.url,
                },
            ), context)

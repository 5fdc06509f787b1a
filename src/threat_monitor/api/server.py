#!/usr/bin/env python3
"""
FastAPI REST API server for the threat monitor.

This server lets services that are not running the monitor in-process
report security events over HTTP, and lets operators inspect the pipeline.

Key Features:
- Event submission endpoint
- Pipeline status including flagged IP addresses
- Recent local audit records
- Health monitoring and graceful shutdown

Usage:
    python -m threat_monitor.api.server

Then services can POST events to: http://<host>:8000/events
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from .. import __version__
from ..config import get_settings
from ..event import EventKind, Outcome, PartialEvent, Severity
from ..instrumentation import get_monitor
from ..log_writer import AuditLog
from ..middleware import request_context


# =============================================================================
# Pydantic Models for API Request/Response
# =============================================================================

class EventRequest(BaseModel):
    """Request model for submitting security events."""
    kind: Optional[EventKind] = Field(None, description="Security event kind")
    severity: Optional[Severity] = Field(None, description="Qualitative severity")
    outcome: Optional[Outcome] = Field(None, description="Outcome of the reported action")
    details: Dict[str, Any] = Field(default_factory=dict, description="Event evidence")
    risk_score: Optional[float] = Field(None, ge=0, le=10, description="Explicit risk score")
    user_id: Optional[str] = Field(None, description="Authenticated principal")
    session_id: Optional[str] = Field(None, description="Session of the principal")
    resource: Optional[str] = None
    action: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "kind": "auth_failure",
                "severity": "medium",
                "outcome": "failure",
                "details": {"endpoint": "/api/login"},
                "user_id": "alice",
            }
        }
    }


class StatusResponse(BaseModel):
    """Response model for pipeline status."""
    events_received: int = Field(..., description="Events accepted since startup")
    events_processed: int = Field(..., description="Events fully dispatched")
    secondary_events: int = Field(..., description="Events emitted by detectors")
    queue_size: int = Field(..., description="Events waiting for a worker")
    suspicious_ips: List[str] = Field(..., description="Addresses flagged by detectors")
    enabled_sinks: List[str] = Field(..., description="Configured external sinks")
    uptime_seconds: float = Field(..., description="Server uptime in seconds")


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str = Field(..., description="Server health status")
    timestamp: str = Field(..., description="Current server timestamp")
    version: str = Field(..., description="API version")
    uptime_seconds: float = Field(..., description="Server uptime in seconds")


# =============================================================================
# FastAPI Application Setup
# =============================================================================

app = FastAPI(
    title="Threat Monitor API",
    description="REST API for security event reporting and threat detection",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

START_TIME = datetime.now(timezone.utc)


def _uptime() -> float:
    return (datetime.now(timezone.utc) - START_TIME).total_seconds()


def require_api_key(x_api_key: str = Header(default=None, alias="X-API-Key")):
    if not x_api_key or x_api_key != get_settings().api_key:
        raise HTTPException(status_code=401, detail="Unauthorized (invalid API key)")
    return True


# =============================================================================
# API Endpoints
# =============================================================================

@app.get("/", response_model=Dict[str, str])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Threat Monitor API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint for monitoring."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        uptime_seconds=_uptime()
    )


@app.post("/events", dependencies=[Depends(require_api_key)])
async def submit_event(event_request: EventRequest, request: Request):
    """
    Submit a security event for analysis.

    The event is queued and processed in the background; the caller's
    address, user agent and headers are used as the request context.
    """
    partial = PartialEvent(**event_request.model_dump(exclude_none=True))
    context = request_context(request)
    get_monitor().log_security_event(partial, context)

    return {
        "status": "accepted",
        "message": "Event queued for processing",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/status", response_model=StatusResponse, dependencies=[Depends(require_api_key)])
async def get_status():
    """Get current pipeline status including flagged addresses."""
    monitor = get_monitor()
    stats = monitor.stats()

    return StatusResponse(
        events_received=stats["received"],
        events_processed=stats["processed"],
        secondary_events=stats["secondary"],
        queue_size=monitor.queue_size(),
        suspicious_ips=sorted(monitor.suspicious_ips),
        enabled_sinks=[sink.name for sink in monitor.dispatcher.enabled_sinks],
        uptime_seconds=_uptime()
    )


@app.get("/logs/audit", dependencies=[Depends(require_api_key)])
async def get_audit_logs(limit: int = 50):
    """Get recent local audit records."""
    audit_log = get_monitor().dispatcher.audit_log
    if audit_log is None:
        audit_log = AuditLog(get_settings().audit_log_path)

    records = audit_log.tail(limit)
    return {
        "events": records,
        "total_returned": len(records)
    }


@app.delete("/system/shutdown", dependencies=[Depends(require_api_key)])
async def shutdown_system():
    """Gracefully shutdown the event pipeline."""
    success = get_monitor().shutdown(timeout=10.0)

    return {
        "status": "shutdown" if success else "timeout",
        "message": "System shutdown completed" if success else "Shutdown timeout - some workers may still be running"
    }


# =============================================================================
# Server Startup
# =============================================================================

if __name__ == "__main__":
    # Builds the pipeline and attaches the run log before serving
    get_monitor()
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info",
        access_log=True
    )

# src/threat_monitor/config.py
"""
Runtime settings for the threat monitor.

Sink endpoints and credentials come from the environment (or a ``.env``
file). A sink whose endpoint is unset is disabled.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class MonitorSettings(BaseSettings):
    """Settings loaded from environment variables; names match the env keys case-insensitively."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Service identity
    service_source: str = "receipt-vault-backend"
    app_env: str = "development"
    hostname: str = "unknown"

    # Splunk HTTP Event Collector
    splunk_hec_endpoint: Optional[str] = None
    splunk_hec_token: Optional[str] = None

    # Elasticsearch
    elasticsearch_endpoint: Optional[str] = None
    elasticsearch_api_key: Optional[str] = None

    # Azure Sentinel
    azure_sentinel_endpoint: Optional[str] = None
    azure_sentinel_token: Optional[str] = None

    # Sumo Logic
    sumo_logic_endpoint: Optional[str] = None

    # Datadog logs intake
    datadog_logs_endpoint: Optional[str] = None
    datadog_api_key: Optional[str] = None

    sink_timeout_seconds: float = 5.0

    # Local logs
    audit_log_path: str = "logs/security_audit.log"
    run_log_path: str = "logs/run.log"

    # Geolocation
    geoip_enabled: bool = False
    geoip_url: str = "http://ip-api.com/json/{ip}"

    # Pipeline
    worker_count: int = 2

    # Operations API
    api_key: str = "secret-api-key-12345"


def get_settings() -> MonitorSettings:
    return MonitorSettings()

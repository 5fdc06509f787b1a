"""Tests for event enrichment."""

import json
import re

import pytest

from threat_monitor.enrichment import EventEnricher, parse_user_agent, sanitize_headers
from threat_monitor.event import (EventKind, Geolocation, Outcome, PartialEvent,
                                  RequestContext, Severity)
from threat_monitor import geolocation
from threat_monitor.geolocation import GeoLocator, StaticGeoLocator


class ExplodingGeoLocator(GeoLocator):
    def resolve(self, ip):
        raise ConnectionError("geo service down")


def test_defaults_for_empty_partial():
    event = EventEnricher().enrich()

    assert event.kind == EventKind.SUSPICIOUS_ACTIVITY
    assert event.severity == Severity.MEDIUM
    assert event.outcome == Outcome.WARNING
    assert event.risk_score == 5.0
    assert event.ip == "unknown"
    assert event.user_agent == "unknown"
    assert event.source == "receipt-vault-backend"
    assert event.user_id is None and event.session_id is None
    assert re.fullmatch(r"rv_sec_\d+_[0-9a-z]{9}", event.id)


def test_ids_are_unique():
    enricher = EventEnricher()
    ids = {enricher.enrich().id for _ in range(200)}
    assert len(ids) == 200


def test_explicit_risk_score_is_kept_and_clamped():
    enricher = EventEnricher()
    assert enricher.enrich(PartialEvent(risk_score=7.5)).risk_score == 7.5
    assert enricher.enrich(PartialEvent(risk_score=25)).risk_score == 10.0


def test_request_context_is_merged(browser_context):
    event = EventEnricher().enrich(PartialEvent(kind=EventKind.DATA_ACCESS), browser_context)

    assert event.ip == "203.0.113.10"
    assert event.user_agent.startswith("Mozilla/5.0")
    assert event.details["method"] == "GET"
    assert event.details["url"] == "/api/receipts"
    assert event.details["referer"] == "https://app.example.com/receipts"
    assert "user-agent" in event.details["headers"]


def test_caller_details_take_precedence(browser_context):
    partial = PartialEvent(details={"url": "/overridden", "endpoint": "/api/receipts"})
    event = EventEnricher().enrich(partial, browser_context)

    assert event.details["url"] == "/overridden"
    assert event.details["method"] == "GET"
    assert event.details["endpoint"] == "/api/receipts"


def test_credential_headers_never_reach_details(browser_context):
    partial = PartialEvent(details={"headers": {"Authorization": "Basic Zm9vOmJhcg=="}})
    event = EventEnricher().enrich(partial, browser_context)

    serialized = json.dumps(event.to_dict())
    assert "super-secret-token" not in serialized
    assert "Zm9vOmJhcg==" not in serialized
    assert "abc123" not in serialized
    assert "key-123" not in serialized
    assert "authorization" not in {k.lower() for k in event.details["headers"]}


def test_sanitize_headers_is_case_insensitive():
    cleaned = sanitize_headers({"AUTHORIZATION": "x", "Cookie": "y", "x-Api-Key": "z", "Accept": "*/*"})
    assert cleaned == {"accept": "*/*"}
    assert sanitize_headers(None) == {}


def test_user_context_from_request():
    context = RequestContext(ip="198.51.100.4", user_id="u-42", session_id="s-9")
    event = EventEnricher().enrich(PartialEvent(), context)
    assert event.user_id == "u-42"
    assert event.session_id == "s-9"


def test_ip_falls_back_to_details():
    event = EventEnricher().enrich(PartialEvent(details={"ip": "192.0.2.55"}))
    assert event.ip == "192.0.2.55"


def test_geolocation_lookup():
    locator = StaticGeoLocator({"203.0.113.10": Geolocation(country="RU", city="Moscow")})
    event = EventEnricher(geolocator=locator).enrich(PartialEvent(ip="203.0.113.10"))
    assert event.geolocation.country == "RU"
    assert event.to_dict()["geolocation"] == {"country": "RU", "city": "Moscow"}


def test_geolocation_failure_leaves_field_unset():
    event = EventEnricher(geolocator=ExplodingGeoLocator()).enrich(PartialEvent(ip="203.0.113.10"))
    assert event.geolocation is None
    assert event.kind == EventKind.SUSPICIOUS_ACTIVITY


@pytest.mark.parametrize("user_agent,os_name,browser,device", [
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36", "Windows", "Chrome", "desktop"),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Firefox/121.0", "macOS", "Firefox", "desktop"),
    ("Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0", "Linux", "Firefox", "desktop"),
    ("Mozilla/5.0 (Linux; Android 14) Chrome/120.0 Mobile Safari/537.36", "Android", "Chrome", "mobile"),
    ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Mobile Safari/604.1", "iOS", "Safari", "mobile"),
    ("Mozilla/5.0 (Windows NT 10.0) Chrome/120.0 Safari/537.36 Edg/120.0", "Windows", "Edge", "desktop"),
    ("curl/8.4.0", "Unknown", "Unknown", "desktop"),
])
def test_parse_user_agent(user_agent, os_name, browser, device):
    info = parse_user_agent(user_agent)
    assert (info.os, info.browser, info.type) == (os_name, browser, device)


def test_event_is_immutable(browser_context):
    event = EventEnricher().enrich(PartialEvent(details={"nested": {"a": 1}}), browser_context)

    with pytest.raises(AttributeError):
        event.risk_score = 0.0
    with pytest.raises(TypeError):
        event.details["method"] = "POST"

    exported = event.to_dict()
    exported["details"]["nested"]["a"] = 2
    assert event.details["nested"]["a"] == 1


def test_unserializable_details_degrade_instead_of_raising():
    class Unpicklable:
        def __deepcopy__(self, memo):
            raise TypeError("cannot copy")

    event = EventEnricher().enrich(PartialEvent(kind=EventKind.FILE_UPLOAD,
                                                details={"blob": Unpicklable()}))
    assert event.kind == EventKind.FILE_UPLOAD
    assert "blob" not in event.details


class _GeoResponse:
    status_code = 200

    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_ip_api_locator(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return _GeoResponse({"status": "success", "countryCode": "CN", "regionName": "Beijing",
                             "city": "Beijing", "lat": 39.9, "lon": 116.4})

    monkeypatch.setattr(geolocation.requests, "get", fake_get)
    locator = geolocation.IpApiGeoLocator()

    first = locator.resolve("8.8.8.8")
    second = locator.resolve("8.8.8.8")
    assert first == second == Geolocation(country="CN", region="Beijing", city="Beijing",
                                          lat=39.9, lon=116.4)
    assert calls == ["http://ip-api.com/json/8.8.8.8"]


def test_ip_api_locator_skips_private_and_failures(monkeypatch):
    def failing_get(url, timeout):
        raise geolocation.requests.ConnectionError("unreachable")

    monkeypatch.setattr(geolocation.requests, "get", failing_get)
    locator = geolocation.IpApiGeoLocator()

    assert locator.resolve("10.0.0.5") is None
    assert locator.resolve("not-an-ip") is None
    assert locator.resolve("8.8.8.8") is None

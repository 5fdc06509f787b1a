"""Tests for the threat detection rules and their windowed state."""

import threading

import pytest

from threat_monitor.enrichment import EventEnricher
from threat_monitor.event import (EventKind, Geolocation, Outcome, PartialEvent,
                                  Severity)
from threat_monitor.geolocation import StaticGeoLocator
from threat_monitor.rules import DetectionConfig, ThreatDetectionEngine
from threat_monitor.windows import FailureCounterStore, SlidingWindowStore

BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0 Safari/537.36"


@pytest.fixture
def engine(clock):
    return ThreatDetectionEngine(clock=clock)


@pytest.fixture
def enricher():
    return EventEnricher()


def quiet_event(enricher, **overrides):
    """An event that trips no detector on its own."""
    values = dict(
        kind=EventKind.DATA_ACCESS,
        ip="203.0.113.20",
        user_agent=BROWSER_UA,
        details={"referer": "https://app.example.com/"},
    )
    values.update(overrides)
    return enricher.enrich(PartialEvent(**values))


def of_kind(secondaries, kind):
    return [s for s in secondaries if s.kind == kind]


def test_quiet_event_emits_nothing(engine, enricher):
    assert engine.evaluate(quiet_event(enricher)) == []


# ---------------------------------------------------------------------
# Brute force

def test_brute_force_threshold_and_retrigger(engine, enricher, auth_failure):
    for _ in range(4):
        secondaries = engine.evaluate(enricher.enrich(auth_failure()))
        assert of_kind(secondaries, EventKind.BRUTE_FORCE_ATTEMPT) == []
    assert not engine.is_suspicious("203.0.113.10")

    fifth = of_kind(engine.evaluate(enricher.enrich(auth_failure())),
                    EventKind.BRUTE_FORCE_ATTEMPT)
    assert len(fifth) == 1
    assert fifth[0].details["attempts"] == 5
    assert fifth[0].details["time_window"] == "5 minutes"
    assert fifth[0].severity == Severity.HIGH
    assert fifth[0].outcome == Outcome.FAILURE
    assert fifth[0].ip == "203.0.113.10"
    assert engine.is_suspicious("203.0.113.10")

    # Counter is not reset on trip: the next failure fires again
    sixth = of_kind(engine.evaluate(enricher.enrich(auth_failure())),
                    EventKind.BRUTE_FORCE_ATTEMPT)
    assert len(sixth) == 1
    assert sixth[0].details["attempts"] == 6


def test_brute_force_keys_are_per_ip_and_user(engine, enricher, auth_failure):
    for i in range(4):
        engine.evaluate(enricher.enrich(auth_failure(user_id="alice")))
        engine.evaluate(enricher.enrich(auth_failure(user_id="bob")))
        engine.evaluate(enricher.enrich(auth_failure(user_id="alice", ip="198.51.100.7")))
    assert engine.suspicious_ips.snapshot() == set()


def test_anonymous_failures_share_a_key(engine, enricher, auth_failure):
    results = [engine.evaluate(enricher.enrich(auth_failure(user_id=None))) for _ in range(5)]
    assert len(of_kind(results[-1], EventKind.BRUTE_FORCE_ATTEMPT)) == 1
    assert engine.failed_logins.get("203.0.113.10:anonymous") == 5


def test_brute_force_counter_expires_after_window(engine, enricher, auth_failure, clock):
    for _ in range(4):
        engine.evaluate(enricher.enrich(auth_failure()))

    clock.advance(DetectionConfig.BRUTE_FORCE_WINDOW_SECONDS)

    secondaries = engine.evaluate(enricher.enrich(auth_failure()))
    assert of_kind(secondaries, EventKind.BRUTE_FORCE_ATTEMPT) == []
    assert engine.failed_logins.get("203.0.113.10:alice") == 1


def test_window_measured_from_first_failure(engine, enricher, auth_failure, clock):
    engine.evaluate(enricher.enrich(auth_failure()))
    clock.advance(299)
    for _ in range(3):
        engine.evaluate(enricher.enrich(auth_failure()))
    clock.advance(1)
    # The first failure was 300s ago, so the whole counter is gone
    secondaries = engine.evaluate(enricher.enrich(auth_failure()))
    assert of_kind(secondaries, EventKind.BRUTE_FORCE_ATTEMPT) == []


# ---------------------------------------------------------------------
# Rate limiting

def test_rate_limit_101st_request(engine, enricher):
    for _ in range(100):
        assert of_kind(engine.evaluate(quiet_event(enricher)), EventKind.API_ABUSE) == []

    abuse = of_kind(engine.evaluate(quiet_event(enricher)), EventKind.API_ABUSE)
    assert len(abuse) == 1
    assert abuse[0].details["request_count"] == 101
    assert abuse[0].details["threshold"] == 100
    assert abuse[0].details["time_window"] == "1 minute"
    assert abuse[0].severity == Severity.MEDIUM


def test_rate_limit_window_slides(engine, enricher, clock):
    for _ in range(100):
        engine.evaluate(quiet_event(enricher))
    clock.advance(60)
    assert of_kind(engine.evaluate(quiet_event(enricher)), EventKind.API_ABUSE) == []
    assert engine.request_windows.count("203.0.113.20") == 1


# ---------------------------------------------------------------------
# Injection

def test_sql_injection_in_query(engine, enricher):
    event = quiet_event(enricher, details={"referer": "x", "query": {"q": "' OR 1=1"}})
    injections = of_kind(engine.evaluate(event), EventKind.INJECTION_ATTEMPT)

    assert len(injections) == 1
    assert injections[0].severity == Severity.HIGH
    assert injections[0].details["pattern_category"] == "sql"
    assert "OR 1=1" in injections[0].details["suspicious_content"]


def test_benign_query_is_clean(engine, enricher):
    event = quiet_event(enricher, details={"referer": "x", "query": {"q": "coffee", "page": "2"}})
    assert of_kind(engine.evaluate(event), EventKind.INJECTION_ATTEMPT) == []


def test_injection_evidence_is_truncated(engine, enricher):
    payload = "<script>alert(1)</script>" + "A" * 2000
    event = quiet_event(enricher, details={"referer": "x", "body": {"comment": payload}})
    injections = of_kind(engine.evaluate(event), EventKind.INJECTION_ATTEMPT)
    assert len(injections[0].details["suspicious_content"]) == 500


# ---------------------------------------------------------------------
# Anomalies

def test_scanner_user_agent(engine, enricher):
    event = quiet_event(enricher, user_agent="sqlmap/1.7 scanner")
    findings = of_kind(engine.evaluate(event), EventKind.SUSPICIOUS_ACTIVITY)
    assert [f.details["anomaly"] for f in findings] == ["unusual_user_agent"]


def test_bot_like_behavior_needs_two_signals(engine, enricher):
    one_signal = quiet_event(enricher, details={})  # missing referer only
    assert of_kind(engine.evaluate(one_signal), EventKind.SUSPICIOUS_ACTIVITY) == []

    two_signals = quiet_event(enricher, details={"request_time": 20})
    findings = of_kind(engine.evaluate(two_signals), EventKind.SUSPICIOUS_ACTIVITY)
    assert len(findings) == 1
    assert findings[0].details["anomaly"] == "bot_like_behavior"
    assert findings[0].details["bot_signals"] == ["fast_request", "missing_referer"]


def test_short_automation_agent_trips_both_checks(engine, enricher):
    event = quiet_event(enricher, user_agent="curl/8", details={})
    anomalies = sorted(f.details["anomaly"] for f in engine.evaluate(event))
    assert anomalies == ["bot_like_behavior", "unusual_user_agent"]


def test_high_risk_country_requires_user():
    locator = StaticGeoLocator({"203.0.113.30": Geolocation(country="KP")})
    enricher = EventEnricher(geolocator=locator)
    engine = ThreatDetectionEngine()

    anonymous = quiet_event(enricher, ip="203.0.113.30")
    assert of_kind(engine.evaluate(anonymous), EventKind.SUSPICIOUS_ACTIVITY) == []

    signed_in = quiet_event(enricher, ip="203.0.113.30", user_id="alice")
    findings = of_kind(engine.evaluate(signed_in), EventKind.SUSPICIOUS_ACTIVITY)
    assert len(findings) == 1
    assert findings[0].details["anomaly"] == "high_risk_country"
    assert findings[0].details["country"] == "KP"


def test_session_concurrency(engine, enricher):
    ok = quiet_event(enricher, session_id="s-1",
                     details={"referer": "x", "session_concurrency": 3})
    assert of_kind(engine.evaluate(ok), EventKind.SESSION_ANOMALY) == []

    too_many = quiet_event(enricher, session_id="s-1",
                           details={"referer": "x", "session_concurrency": 4})
    findings = of_kind(engine.evaluate(too_many), EventKind.SESSION_ANOMALY)
    assert len(findings) == 1
    assert findings[0].severity == Severity.HIGH

    no_session = quiet_event(enricher, details={"referer": "x", "session_concurrency": 9})
    assert of_kind(engine.evaluate(no_session), EventKind.SESSION_ANOMALY) == []


# ---------------------------------------------------------------------
# Engine behavior

def test_secondary_events_carry_trigger_identity(engine, enricher):
    event = quiet_event(enricher, user_agent="python-requests/2.31", user_id="bob",
                        session_id="s-7")
    secondary = engine.evaluate(event)[0]

    assert secondary.ip == event.ip
    assert secondary.user_id == "bob"
    assert secondary.session_id == "s-7"
    assert secondary.details["trigger_event_id"] == event.id
    assert secondary.details["detector"] == "anomaly"
    assert secondary.risk_score == DetectionConfig.RISK_UNUSUAL_USER_AGENT


def test_derived_events_are_not_reevaluated(engine, enricher):
    event = quiet_event(enricher, user_agent="curl/8", details={})
    for secondary in engine.evaluate(event):
        derived = enricher.enrich(secondary)
        assert derived.is_derived
        assert engine.evaluate(derived) == []


def test_failing_detector_is_isolated(engine, enricher, monkeypatch):
    def broken(event):
        raise RuntimeError("rule bug")

    monkeypatch.setattr(engine, "_detect_rate_limit_violation", broken)
    event = quiet_event(enricher, user_agent="curl/8.4.0")
    findings = engine.evaluate(event)
    assert [f.details["anomaly"] for f in findings] == ["unusual_user_agent"]


def test_concurrent_increments_are_not_lost(clock):
    store = FailureCounterStore(ttl=300, clock=clock)

    def hammer():
        for _ in range(500):
            store.increment("203.0.113.10:alice")

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("203.0.113.10:alice") == 4000


def test_sliding_window_drops_idle_keys(clock):
    store = SlidingWindowStore(window=60, shards=1, clock=clock)
    store.record("198.51.100.1")
    clock.advance(61)
    store.record("198.51.100.2")
    assert len(store) == 1


def test_sliding_window_sweeps_idle_keys_once_per_window(clock):
    store = SlidingWindowStore(window=60, shards=1, clock=clock)
    clock.advance(59)
    store.record("198.51.100.1")
    clock.advance(1)
    store.record("198.51.100.2")
    clock.advance(59.5)
    # 198.51.100.1 went idle, but the shard was swept under a window ago
    assert store.record("198.51.100.3") == 1
    assert len(store) == 3
    assert store.count("198.51.100.1") == 0

    clock.advance(0.5)
    assert store.record("198.51.100.3") == 2
    assert len(store) == 1


def test_failure_counters_expire_and_are_swept(clock):
    store = FailureCounterStore(ttl=300, shards=1, clock=clock)
    for _ in range(3):
        store.increment("203.0.113.10:alice")
    store.increment("203.0.113.11:bob")

    clock.advance(300)
    assert store.get("203.0.113.10:alice") == 0
    assert store.increment("203.0.113.12:carol") == 1
    assert len(store) == 1

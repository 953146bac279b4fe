"""Tests for the tracking ingestion API."""

import json
import os
from dataclasses import replace

import pytest

from visitor_analytics.app import create_app
from visitor_analytics.reports import fingerprint_report

from conftest import CHROME_UA


@pytest.fixture
def app(config):
    return create_app(config, time_func=lambda: 1000.0, start_scheduler=False)


@pytest.fixture
def client(app):
    app.config["TESTING"] = True
    return app.test_client()


def _stored_events(config):
    found = []
    for root, _, names in os.walk(config.events_path):
        found.extend(os.path.join(root, n) for n in names if n.endswith(".json"))
    return found


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["events_written"] == 0
        assert data["open_sessions"] == 0
        assert data["validation_stats"]["total"] == 0


class TestIngestEvent:
    def test_accepts_and_stores(self, client, config, sample_event):
        resp = client.post("/api/tracking", json=sample_event)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["status"] == "accepted"
        assert body["bot"] is False

        files = _stored_events(config)
        assert len(files) == 1
        with open(files[0]) as f:
            stored = json.load(f)
        assert stored["ipAddress"] == "127.0.0.1"
        assert stored["timeOnPageSeconds"] == 45

        health = client.get("/health").get_json()
        assert health["events_written"] == 1
        assert health["open_sessions"] == 1
        assert health["tracked_addresses"] == 1

    def test_forwarded_for_sets_address(self, client, config, sample_event):
        resp = client.post("/api/tracking", json=sample_event,
                           headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        assert resp.status_code == 201
        with open(_stored_events(config)[0]) as f:
            assert json.load(f)["ipAddress"] == "203.0.113.5"

    def test_schema_invalid(self, client, config, sample_event):
        del sample_event["pageUrl"]
        resp = client.post("/api/tracking", json=sample_event)
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["status"] == "invalid"
        assert body["errors"]
        assert _stored_events(config) == []

    def test_non_object_body(self, client):
        resp = client.post("/api/tracking", json=["not", "an", "event"])
        assert resp.status_code == 400
        resp = client.post("/api/tracking", data="garbage", content_type="application/json")
        assert resp.status_code == 400

    def test_bad_timestamp(self, client, sample_event):
        sample_event["timestamp"] = "yesterday"
        resp = client.post("/api/tracking", json=sample_event)
        assert resp.status_code == 400

    @pytest.mark.parametrize("width", ["1e400", "Infinity", "-Infinity", "NaN"])
    def test_non_finite_number(self, client, config, sample_event, width):
        body = json.dumps(sample_event).replace('"screenWidth": 1920', f'"screenWidth": {width}')
        resp = client.post("/api/tracking", data=body, content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["errors"] == ["$.deviceInfo.screenWidth is not a finite number"]
        assert _stored_events(config) == []

    def test_rate_limited(self, config, sample_event):
        app = create_app(replace(config, rate_limit_per_minute=2),
                         time_func=lambda: 1000.0, start_scheduler=False)
        client = app.test_client()
        codes = [client.post("/api/tracking", json=sample_event).status_code for _ in range(3)]
        assert codes == [201, 201, 429]
        assert client.post("/api/tracking", json={"broken": True}).status_code == 429

    def test_bot_stored_but_not_profiled(self, client, app, config, sample_event):
        sample_event["userAgent"] = "python-requests/2.32"
        sample_event["eventType"] = "session_end"
        resp = client.post("/api/tracking", json=sample_event)
        assert resp.status_code == 201
        assert resp.get_json()["bot"] is True
        assert resp.get_json()["requires_verification"] is True
        assert len(_stored_events(config)) == 1
        assert app.config["components"]["intelligence"].get_visitor_profiles() == []


class TestLeads:
    def test_profile_built_on_session_end(self, client, sample_event):
        client.post("/api/tracking", json=sample_event)
        assert client.get("/api/leads").get_json()["visitor_profiles"] == []

        end = dict(sample_event, eventType="session_end", timestamp="2025-07-25T14:05:00.000Z",
                   pageUrl="/contact")
        assert client.post("/api/tracking", json=end).status_code == 201

        data = client.get("/api/leads").get_json()
        assert [p["address"] for p in data["visitor_profiles"]] == ["127.0.0.1"]
        assert data["visitor_profiles"][0]["total_visits"] == 1
        assert "127.0.0.1" in data["qualifications"]
        assert "market_insights" in data["sales_intelligence"]

    def test_sweep_folds_idle_sessions(self, client, app, sample_event):
        client.post("/api/tracking", json=sample_event)
        app.config["components"]["sweep"]()
        profiles = app.config["components"]["intelligence"].get_visitor_profiles()
        # the sample event is long in the past, so its session is idle
        assert [p.address for p in profiles] == ["127.0.0.1"]
        assert client.get("/health").get_json()["open_sessions"] == 0


class TestFingerprint:
    def test_append(self, client, config):
        resp = client.post("/api/tracking/fingerprint",
                           json={"visitorId": "v1", "userAgent": CHROME_UA, "interactions": {"clicks": 2}})
        assert resp.status_code == 201
        with open(config.fingerprint_log_path) as f:
            entry = json.loads(f.readline())
        assert entry["visitorId"] == "v1"
        assert entry["ipAddress"] == "127.0.0.1"
        assert entry["clicks"] == 2
        assert client.get("/health").get_json()["fingerprints_written"] == 1

    def test_rejects_non_object(self, client):
        resp = client.post("/api/tracking/fingerprint", json="nope")
        assert resp.status_code == 400

    def test_non_object_interactions(self, client, config):
        resp = client.post("/api/tracking/fingerprint", json={"visitorId": "v", "interactions": [1, 2]})
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["status"] == "invalid"
        assert body["errors"]
        assert not os.path.exists(config.fingerprint_log_path)

    @pytest.mark.parametrize("clicks", ["1e400", "Infinity", "NaN"])
    def test_non_finite_counters(self, client, config, clicks):
        resp = client.post("/api/tracking/fingerprint",
                           data='{"visitorId": "v", "interactions": {"clicks": %s}}' % clicks,
                           content_type="application/json")
        assert resp.status_code == 400
        assert not os.path.exists(config.fingerprint_log_path)
        stats = client.get("/health").get_json()["fingerprint_validation_stats"]
        assert stats["invalid"] == 1

    def test_log_stays_readable(self, client, config):
        client.post("/api/tracking/fingerprint", json={"visitorId": "v1", "interactions": {"clicks": 2}})
        client.post("/api/tracking/fingerprint",
                    data='{"visitorId": "v2", "timeOnPage": 1e400}', content_type="application/json")
        report = fingerprint_report(config)
        assert report["status"] == "ok"
        assert report["analytics"]["total_entries"] == 1

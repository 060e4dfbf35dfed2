"""Tests for the security monitoring and rate limit administration endpoints"""

from backoffice import config
from backoffice.security_monitoring import security_monitor


def test_stats_require_admin(client):
    assert client.get("/api/security/stats").status_code == 401
    assert client.get("/api/security/events").status_code == 401


def test_stats(client, admin_headers):
    client.post("/api/auth/login", json={"username": "admin", "password": "nope"})

    response = client.get("/api/security/stats", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["total_events"] == 1
    assert body["data"]["events_by_type"] == {"auth_failure": 1}
    assert body["data"]["config"] == {"enabled": False, "webhook_url": None, "min_severity": "medium"}


def test_test_event_and_events_listing(client, admin_headers):
    assert client.post("/api/security/test-event", headers=admin_headers).status_code == 200
    assert client.post("/api/security/test-event", headers=admin_headers).status_code == 200

    response = client.get("/api/security/events?limit=1", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    event = body["data"][0]
    assert event["type"] == "api_error"
    assert event["agent_id"] == "admin"
    assert event["metadata"]["test"] is True


def test_test_event_is_development_only(client, admin_headers, monkeypatch):
    monkeypatch.setattr(config, "ENVIRONMENT", "production")

    response = client.post("/api/security/test-event", headers=admin_headers)

    assert response.status_code == 403
    assert security_monitor.get_recent_events() == []


def test_invalid_query_is_422(client, admin_headers):
    response = client.get("/api/security/events?limit=abc", headers=admin_headers)
    assert response.status_code == 422


def test_rate_limit_status_and_reset(client, admin_headers):
    client.post("/api/auth/login", json={"username": "admin", "password": "nope"})

    status = client.get("/api/security/rate-limits/testclient/login", headers=admin_headers)
    assert status.status_code == 200
    assert status.json()["count"] == 1
    assert status.json()["blocked"] is False

    reset = client.delete("/api/security/rate-limits/testclient?endpoint=login", headers=admin_headers)
    assert reset.status_code == 200
    assert reset.json() == {"success": True, "identifier": "testclient", "endpoint": "login"}

    missing = client.get("/api/security/rate-limits/testclient/login", headers=admin_headers)
    assert missing.status_code == 404


def test_reset_unblocks_login(client, admin_headers):
    for _ in range(11):
        client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
    assert client.post("/api/auth/login", json={"username": "admin", "password": "nope"}).status_code == 429

    client.delete("/api/security/rate-limits/testclient", headers=admin_headers)

    assert client.post("/api/auth/login", json={"username": "admin", "password": "nope"}).status_code == 401


def test_unhandled_errors_return_500_and_log_event(client, admin_headers, monkeypatch):
    def broken():
        raise RuntimeError("statistics unavailable")

    monkeypatch.setattr(security_monitor, "get_statistics", broken)

    response = client.get("/api/security/stats", headers=admin_headers)

    assert response.status_code == 500
    assert response.json()["error"] == "Internal server error"
    event = security_monitor.get_recent_events()[-1]
    assert event.type.value == "api_error"
    assert event.metadata["error"] == "RuntimeError"

"""Tests for the health and performance endpoints"""

from backoffice.performance_monitor import performance_monitor


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["environment"] == "development"
    assert body["version"] == "1.0.0"
    assert "rss" in body["memory"]
    assert body["uptime"] >= 0


def test_responses_carry_security_headers(client):
    response = client.get("/api/health")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "default-src 'none'" in response.headers["Content-Security-Policy"]
    assert response.headers["Cache-Control"].startswith("no-store")
    assert "Strict-Transport-Security" not in response.headers


def test_diagnostic_pings_database(client):
    response = client.get("/api/health/diagnostic")

    assert response.status_code == 200
    body = response.json()
    assert body["server"]["status"] == "running"
    assert body["database"]["status"] == "connected"
    assert "health_check" in performance_monitor.get_enhanced_report()["database_operations"]


def test_system_check_reports_services(client):
    body = client.get("/api/health/system-check").json()

    assert body["services"]["database"]["status"] == "connected"
    assert body["services"]["cache"] == {"status": "disabled"}
    assert body["services"]["security_webhook"] == {"status": "disabled"}
    assert body["security"]["https"] is False


def test_performance_reports_track_requests(client):
    client.get("/api/health")
    client.get("/api/health")

    report = client.get("/api/health/performance").json()
    assert report["summary"]["total_requests"] == 2
    assert report["endpoints"]["/api/health"]["request_count"] == 2

    realtime = client.get("/api/health/performance/realtime").json()
    assert len(realtime["last_requests"]) == 3

    enhanced = client.get("/api/health/performance/enhanced").json()
    assert set(enhanced) >= {"database_operations", "cache_performance", "optimization_metrics"}


def test_clear_performance_requires_admin(client):
    response = client.post("/api/health/performance/clear")
    assert response.status_code == 401


def test_clear_performance_metrics(client, admin_headers):
    client.get("/api/health")

    response = client.post("/api/health/performance/clear", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {"message": "Performance metrics cleared"}
    # Only the clear request itself is recorded afterwards
    assert performance_monitor.get_report()["summary"]["total_requests"] == 1


def test_clear_performance_is_admin_rate_limited(client, admin_headers):
    for _ in range(10):
        assert client.post("/api/health/performance/clear", headers=admin_headers).status_code == 200

    response = client.post("/api/health/performance/clear", headers=admin_headers)

    assert response.status_code == 429
    assert response.json()["detail"]["message"] == "Too many admin operations. Please wait before trying again."
    assert response.json()["detail"]["window"] == "15 minutes"


def test_clear_cache_without_redis(client, admin_headers):
    response = client.post("/api/health/cache/clear", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {"message": "Cleared 0 cached responses"}


def test_middleware_request_order():
    from fastapi.middleware.cors import CORSMiddleware

    from backoffice.cache import ResponseCacheMiddleware
    from backoffice.main import app
    from backoffice.performance_monitor import PerformanceMiddleware
    from backoffice.security_headers import SecurityHeadersMiddleware

    assert [middleware.cls for middleware in app.user_middleware] == [
        CORSMiddleware,
        PerformanceMiddleware,
        SecurityHeadersMiddleware,
        ResponseCacheMiddleware,
    ]

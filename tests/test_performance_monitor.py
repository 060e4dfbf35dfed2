"""Unit tests for request performance monitoring"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backoffice.performance_monitor import PerformanceMiddleware, PerformanceMonitor, RequestMetric


def make_metric(endpoint="/api/test", status_code=200, response_time_ms=10.0):
    return RequestMetric(
        response_time_ms=response_time_ms,
        memory={"rss": 1, "vms": 2},
        cpu={"user": 0.1, "system": 0.1},
        timestamp="2024-01-01T00:00:00+00:00",
        endpoint=endpoint,
        method="GET",
        status_code=status_code,
    )


@pytest.fixture
def monitor():
    return PerformanceMonitor(max_metrics=5)


def test_empty_report(monitor):
    report = monitor.get_report()

    assert report["summary"]["total_requests"] == 0
    assert report["summary"]["average_response_time"] == 0
    assert report["summary"]["error_rate"] == 0
    assert report["endpoints"] == {}
    assert report["timeline"] == []
    assert set(report["system_health"]) == {"memory_usage", "cpu_usage", "load_average"}


def test_report_aggregates_by_path(monitor):
    monitor.add_metric(make_metric("/api/a?x=1", 200, 10))
    monitor.add_metric(make_metric("/api/a", 500, 30))
    monitor.add_metric(make_metric("/api/b", 404, 20))

    report = monitor.get_report()

    assert report["summary"]["total_requests"] == 3
    assert report["summary"]["average_response_time"] == pytest.approx(20)
    assert report["summary"]["error_rate"] == pytest.approx(200 / 3)
    assert report["endpoints"]["/api/a"] == {
        "average_response_time": pytest.approx(20),
        "request_count": 2,
        "error_count": 1,
    }
    assert report["endpoints"]["/api/b"]["error_count"] == 1


def test_buffer_keeps_most_recent_metrics(monitor):
    for i in range(8):
        monitor.add_metric(make_metric(f"/api/{i}"))

    realtime = monitor.get_realtime_metrics()

    assert monitor.get_report()["summary"]["total_requests"] == 5
    assert [m["endpoint"] for m in realtime["last_requests"]] == [f"/api/{i}" for i in range(3, 8)]


def test_clear_metrics_resets_everything(monitor):
    monitor.add_metric(make_metric())
    monitor.track_db_operation("SELECT", 5)
    monitor.track_cache_hit()

    monitor.clear_metrics()

    report = monitor.get_enhanced_report()
    assert report["summary"]["total_requests"] == 0
    assert report["database_operations"] == {}
    assert report["cache_performance"]["hits"] == 0


def test_enhanced_report_database_and_cache_stats(monitor):
    monitor.track_db_operation("SELECT", 2)
    monitor.track_db_operation("SELECT", 4)
    monitor.track_db_operation("UPDATE", 30)
    monitor.track_cache_hit()
    monitor.track_cache_hit()
    monitor.track_cache_hit()
    monitor.track_cache_miss()
    monitor.update_cache_size(7)

    report = monitor.get_enhanced_report()

    assert report["database_operations"]["SELECT"]["average_time"] == pytest.approx(3)
    assert report["database_operations"]["SELECT"]["count"] == 2
    assert report["optimization_metrics"]["average_db_operation_time"] == pytest.approx(12)
    assert report["optimization_metrics"]["slowest_db_operations"][0]["operation"] == "UPDATE"
    assert report["cache_performance"] == {"hit_rate": 75.0, "hits": 3, "misses": 1, "size": 7}


def test_time_db_operation_records_errors_separately(monitor):
    with monitor.time_db_operation("load"):
        pass

    with pytest.raises(ValueError):
        with monitor.time_db_operation("load"):
            raise ValueError("boom")

    operations = monitor.get_enhanced_report()["database_operations"]
    assert operations["load"]["count"] == 1
    assert operations["load_error"]["count"] == 1


def test_middleware_records_status_and_errors(monitor):
    app = FastAPI()
    app.add_middleware(PerformanceMiddleware, monitor=monitor)

    @app.get("/ok")
    async def ok():
        return {"status": "ok"}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("boom")

    client = TestClient(app, raise_server_exceptions=False)
    client.get("/ok?page=2", headers={"User-Agent": "pytest"})
    client.get("/boom")

    timeline = monitor.get_report()["timeline"]
    assert timeline[0]["endpoint"] == "/ok?page=2"
    assert timeline[0]["status_code"] == 200
    assert timeline[0]["user_agent"] == "pytest"
    assert timeline[1]["endpoint"] == "/boom"
    assert timeline[1]["status_code"] == 500

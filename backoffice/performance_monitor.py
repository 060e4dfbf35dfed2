"""
Request performance monitoring
Keeps a capped buffer of per-request samples and exposes simple aggregates
"""

import logging
import os
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Optional

import psutil
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

MAX_METRICS = 1000  # Keep last 1000 requests
TIMELINE_SIZE = 50
REALTIME_SIZE = 10
SLOWEST_OPERATIONS = 5


@dataclass
class RequestMetric:
    response_time_ms: float
    memory: dict[str, int]
    cpu: dict[str, float]
    timestamp: str
    endpoint: Optional[str] = None
    method: Optional[str] = None
    user_agent: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def memory_usage() -> dict[str, int]:
    info = psutil.Process(os.getpid()).memory_info()
    return {"rss": info.rss, "vms": info.vms}


def cpu_usage() -> dict[str, float]:
    times = psutil.Process(os.getpid()).cpu_times()
    return {"user": times.user, "system": times.system}


def load_average() -> list[float]:
    try:
        return [round(value, 2) for value in psutil.getloadavg()]
    except (AttributeError, OSError):
        return [0.0, 0.0, 0.0]


class PerformanceMonitor:
    """In-memory request, database and cache statistics"""

    def __init__(self, max_metrics: int = MAX_METRICS, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = Lock()
        self._metrics: deque[RequestMetric] = deque(maxlen=max_metrics)
        self._db_metrics: dict[str, dict[str, float]] = {}
        self._cache_stats = {"hits": 0, "misses": 0, "size": 0}
        self._start_time = clock()

    @staticmethod
    def start_request() -> float:
        return time.perf_counter()

    def end_request(
        self,
        start_time: float,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> RequestMetric:
        metric = RequestMetric(
            response_time_ms=(time.perf_counter() - start_time) * 1000,
            memory=memory_usage(),
            cpu=cpu_usage(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            endpoint=endpoint,
            method=method,
            user_agent=user_agent,
            status_code=status_code,
        )
        self.add_metric(metric)
        return metric

    def add_metric(self, metric: RequestMetric) -> None:
        with self._lock:
            self._metrics.append(metric)

    def uptime(self) -> float:
        return self._clock() - self._start_time

    def get_report(self) -> dict[str, Any]:
        with self._lock:
            metrics = list(self._metrics)

        system_health = {
            "memory_usage": memory_usage(),
            "cpu_usage": cpu_usage(),
            "load_average": load_average(),
        }

        if not metrics:
            return {
                "summary": {
                    "average_response_time": 0,
                    "total_requests": 0,
                    "error_rate": 0,
                    "uptime": self.uptime(),
                },
                "endpoints": {},
                "system_health": system_health,
                "timeline": [],
            }

        total_requests = len(metrics)
        average_response_time = sum(m.response_time_ms for m in metrics) / total_requests
        error_count = sum(1 for m in metrics if m.status_code and m.status_code >= 400)

        endpoints: dict[str, dict[str, float]] = {}
        for metric in metrics:
            if not metric.endpoint:
                continue
            path = metric.endpoint.split("?")[0]
            stats = endpoints.setdefault(
                path, {"average_response_time": 0.0, "request_count": 0, "error_count": 0}
            )
            stats["request_count"] += 1
            stats["average_response_time"] += metric.response_time_ms
            if metric.status_code and metric.status_code >= 400:
                stats["error_count"] += 1

        for stats in endpoints.values():
            stats["average_response_time"] /= stats["request_count"]

        return {
            "summary": {
                "average_response_time": average_response_time,
                "total_requests": total_requests,
                "error_rate": error_count / total_requests * 100,
                "uptime": self.uptime(),
            },
            "endpoints": endpoints,
            "system_health": system_health,
            "timeline": [m.to_dict() for m in metrics[-TIMELINE_SIZE:]],
        }

    def get_realtime_metrics(self) -> dict[str, Any]:
        with self._lock:
            last_requests = list(self._metrics)[-REALTIME_SIZE:]
        return {
            "memory_usage": memory_usage(),
            "cpu_usage": cpu_usage(),
            "uptime": self.uptime(),
            "last_requests": [m.to_dict() for m in last_requests],
        }

    def clear_metrics(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._db_metrics.clear()
            self._cache_stats = {"hits": 0, "misses": 0, "size": 0}
            self._start_time = self._clock()
        logger.info("🧹 Performance metrics cleared")

    # Database operation tracking

    def track_db_operation(self, operation: str, time_ms: float) -> None:
        with self._lock:
            stats = self._db_metrics.setdefault(
                operation, {"total_time": 0.0, "count": 0, "last_updated": 0.0}
            )
            stats["total_time"] += time_ms
            stats["count"] += 1
            stats["last_updated"] = self._clock()

    @contextmanager
    def time_db_operation(self, operation: str):
        """
        Time a block of database work

        Example:
            with performance_monitor.time_db_operation("load_rate_limit"):
                db.query(RateLimitEntry).all()
        """
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.track_db_operation(f"{operation}_error", (time.perf_counter() - start) * 1000)
            raise
        self.track_db_operation(operation, (time.perf_counter() - start) * 1000)

    # Cache tracking

    def track_cache_hit(self) -> None:
        with self._lock:
            self._cache_stats["hits"] += 1

    def track_cache_miss(self) -> None:
        with self._lock:
            self._cache_stats["misses"] += 1

    def update_cache_size(self, size: int) -> None:
        with self._lock:
            self._cache_stats["size"] = size

    def get_enhanced_report(self) -> dict[str, Any]:
        report = self.get_report()

        with self._lock:
            db_metrics = {name: dict(stats) for name, stats in self._db_metrics.items()}
            cache_stats = dict(self._cache_stats)

        database_operations = {}
        total_db_time = 0.0
        total_db_operations = 0
        for operation, stats in db_metrics.items():
            database_operations[operation] = {
                "average_time": stats["total_time"] / stats["count"],
                "count": stats["count"],
                "last_updated": stats["last_updated"],
            }
            total_db_time += stats["total_time"]
            total_db_operations += stats["count"]

        slowest = sorted(
            database_operations.items(), key=lambda item: item[1]["average_time"], reverse=True
        )[:SLOWEST_OPERATIONS]

        total_cache_requests = cache_stats["hits"] + cache_stats["misses"]
        hit_rate = cache_stats["hits"] / total_cache_requests * 100 if total_cache_requests else 0

        report.update(
            {
                "database_operations": database_operations,
                "cache_performance": {
                    "hit_rate": hit_rate,
                    "hits": cache_stats["hits"],
                    "misses": cache_stats["misses"],
                    "size": cache_stats["size"],
                },
                "optimization_metrics": {
                    "average_db_operation_time": (
                        total_db_time / total_db_operations if total_db_operations else 0
                    ),
                    "slowest_db_operations": [
                        {"operation": name, "average_time": stats["average_time"]}
                        for name, stats in slowest
                    ],
                },
            }
        )
        return report


# Global monitor instance
performance_monitor = PerformanceMonitor()


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Record response time and status for every request"""

    def __init__(self, app, monitor: Optional[PerformanceMonitor] = None):
        super().__init__(app)
        self.monitor = monitor or performance_monitor

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = self.monitor.start_request()
        endpoint = request.url.path
        if request.url.query:
            endpoint = f"{endpoint}?{request.url.query}"
        user_agent = request.headers.get("user-agent")

        try:
            response = await call_next(request)
        except Exception:
            self.monitor.end_request(start_time, endpoint, request.method, 500, user_agent)
            raise

        self.monitor.end_request(
            start_time, endpoint, request.method, response.status_code, user_agent
        )
        return response

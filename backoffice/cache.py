"""
Redis-backed response caching for read-heavy GET endpoints
Caching is skipped entirely when Redis is not configured or unreachable
"""
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis
from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .config import REDIS_URL, RESPONSE_CACHE_RULES
from .performance_monitor import PerformanceMonitor, performance_monitor

logger = logging.getLogger(__name__)

RESPONSE_KEY_PREFIX = "response"
RECONNECT_BACKOFF_SECONDS = 30.0
CONNECTION_ERRORS = (redis.ConnectionError, redis.TimeoutError, ConnectionError, TimeoutError)

redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """
    Get or create the Redis client from REDIS_URL
    Raises RuntimeError when Redis is not configured
    """
    global redis_client

    if redis_client is None:
        if not REDIS_URL:
            raise RuntimeError("REDIS_URL is not configured")

        # Mask password in URL for logging
        if "@" in REDIS_URL:
            url_parts = REDIS_URL.split("@")
            protocol = url_parts[0].split(":")[0]
            masked_url = f"{protocol}:****@{url_parts[1]}"
        else:
            masked_url = REDIS_URL
        logger.info(f"📡 Connecting to Redis: {masked_url}")

        client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client.ping()
        redis_client = client
        logger.info("✅ Redis connected successfully")

    return redis_client


class Cache:
    """
    JSON cache over a lazily connected Redis client

    A failed connect or a dropped connection is remembered for
    ``retry_seconds``; until then every operation is a miss/no-op without
    touching the network.
    """

    def __init__(
        self,
        client_factory: Callable[[], redis.Redis] = get_redis_client,
        retry_seconds: float = RECONNECT_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client_factory = client_factory
        self._retry_seconds = retry_seconds
        self._clock = clock
        self._client: Optional[redis.Redis] = None
        self._down_until = 0.0

    def client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client
        if self._clock() < self._down_until:
            return None
        try:
            self._client = self._client_factory()
        except Exception as e:
            self._mark_down(e)
        return self._client

    def _mark_down(self, error: Exception) -> None:
        self._client = None
        self._down_until = self._clock() + self._retry_seconds
        logger.warning(f"⚠️ Redis cache unavailable, retrying in {self._retry_seconds:.0f}s: {error}")

    def _call(self, action: str, key: str, operation: Callable[[redis.Redis], Any], default: Any) -> Any:
        client = self.client()
        if client is None:
            return default
        try:
            return operation(client)
        except CONNECTION_ERRORS as e:
            self._mark_down(e)
        except Exception as e:
            logger.error(f"❌ Cache {action} failed for {key}: {e}")
        return default

    def is_available(self) -> bool:
        return self.client() is not None

    def get(self, key: str) -> Optional[Any]:
        raw = self._call("get", key, lambda client: client.get(key), None)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error(f"❌ Dropping undecodable cache entry {key}")
            self.delete(key)
            return None

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        payload = json.dumps(value)
        return self._call("set", key, lambda client: client.setex(key, ttl, payload) or True, False)

    def delete(self, key: str) -> bool:
        return self._call("delete", key, lambda client: client.delete(key) >= 0, False)

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern such as ``response:*``"""

        def delete_matching(client: redis.Redis) -> int:
            keys = list(client.scan_iter(match=pattern))
            return client.delete(*keys) if keys else 0

        return self._call("delete", pattern, delete_matching, 0)


# Global cache instance
cache = Cache()


@dataclass(frozen=True)
class CacheRule:
    prefix: str
    duration: int  # seconds
    private: bool = False

    @property
    def cache_control(self) -> str:
        scope = "private" if self.private else "public"
        return f"{scope}, max-age={self.duration}"


def parse_cache_rules(value: str) -> list[CacheRule]:
    """
    Parse "prefix=seconds[:private]" entries separated by commas

    Example:
        parse_cache_rules("/api/health/diagnostic=15,/api/health/performance=5:private")
    """
    rules = []
    for item in filter(None, (part.strip() for part in value.split(","))):
        try:
            prefix, setting = item.split("=", 1)
            duration, _, scope = setting.partition(":")
            rules.append(CacheRule(prefix=prefix.strip(), duration=int(duration), private=scope == "private"))
        except ValueError:
            logger.warning(f"⚠️ Ignoring malformed response cache rule: {item}")
    return rules


def build_response_key(request: Request) -> str:
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return f"{RESPONSE_KEY_PREFIX}:{url}"


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serve and store successful JSON GET responses for configured path prefixes"""

    def __init__(
        self,
        app,
        rules: Optional[list[CacheRule]] = None,
        cache_backend: Optional[Cache] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        super().__init__(app)
        self.rules = parse_cache_rules(RESPONSE_CACHE_RULES) if rules is None else rules
        self.cache = cache_backend or cache
        self.monitor = monitor or performance_monitor

    def match_rule(self, path: str) -> Optional[CacheRule]:
        for rule in self.rules:
            if path.startswith(rule.prefix):
                return rule
        return None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rule = self.match_rule(request.url.path) if request.method == "GET" else None
        # Keys carry only the URL, so responses to credentialed callers are never shared
        if rule is None or "authorization" in request.headers:
            return await call_next(request)
        if not await run_in_threadpool(self.cache.is_available):
            return await call_next(request)

        key = build_response_key(request)
        cached = await run_in_threadpool(self.cache.get, key)
        if cached is not None:
            self.monitor.track_cache_hit()
            response = Response(
                content=cached["body"],
                status_code=200,
                media_type="application/json",
            )
            self._set_cache_headers(response, rule, cached["etag"], "HIT")
            return response

        self.monitor.track_cache_miss()
        response = await call_next(request)

        if response.status_code != 200 or not response.headers.get("content-type", "").startswith(
            "application/json"
        ):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        etag = f'"{hashlib.sha1(body).hexdigest()[:16]}"'
        await run_in_threadpool(self.cache.set, key, {"body": body.decode("utf-8"), "etag": etag}, rule.duration)

        headers = {k: v for k, v in response.headers.items() if k.lower() != "content-length"}
        fresh = Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )
        self._set_cache_headers(fresh, rule, etag, "MISS")
        return fresh

    @staticmethod
    def _set_cache_headers(response: Response, rule: CacheRule, etag: str, state: str) -> None:
        response.headers["Cache-Control"] = rule.cache_control
        response.headers["ETag"] = etag
        response.headers["Vary"] = "Accept-Encoding"
        response.headers["X-Cache"] = state


def clear_cache(pattern: Optional[str] = None) -> int:
    """Drop cached responses whose URL contains ``pattern``, or all of them"""
    glob = f"{RESPONSE_KEY_PREFIX}:*{pattern}*" if pattern else f"{RESPONSE_KEY_PREFIX}:*"
    deleted = cache.delete_pattern(glob)
    logger.info(f"🧹 Cleared {deleted} cached responses ({pattern or 'all'})")
    return deleted


def get_cache_stats() -> dict:
    """Get cache statistics"""
    client = cache.client()
    if not client:
        return {"available": False}

    try:
        info = client.info()
        return {
            "available": True,
            "used_memory": info.get("used_memory_human"),
            "connected_clients": info.get("connected_clients"),
            "keys": client.dbsize(),
            "keyspace_hits": info.get("keyspace_hits", 0),
            "keyspace_misses": info.get("keyspace_misses", 0),
        }
    except Exception as e:
        logger.error(f"❌ Failed to get cache stats: {e}")
        return {"available": False, "error": str(e)}

"""
Database-backed rate limiting with an in-memory fallback
Falls back to process memory whenever the database is unavailable
"""

import asyncio
import heapq
import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from . import config
from .database import SessionLocal
from .models import RateLimitEntry
from .security_monitoring import SecurityEventSeverity, SecurityEventType, security_monitor

logger = logging.getLogger(__name__)

# Fallback store housekeeping
FALLBACK_SCAN_LIMIT = 500
FALLBACK_EXPIRED_BATCH = 200
FALLBACK_EVICT_BATCH = 50


@dataclass(frozen=True)
class RateLimitPolicy:
    """Threshold for one route category.

    A policy with a long window escalates: past ``max_requests`` the short
    window keeps sliding, and past ``max_requests_long`` within
    ``long_window_seconds`` of the first attempt the client is blocked for the
    whole long window.
    """

    name: str
    max_requests: int
    window_seconds: int
    max_requests_long: Optional[int] = None
    long_window_seconds: Optional[int] = None

    @property
    def escalating(self) -> bool:
        return self.max_requests_long is not None and self.long_window_seconds is not None


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float
    first_attempt_time: Optional[float] = None
    blocked: bool = False

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "reset_time": self.reset_time,
            "first_attempt_time": self.first_attempt_time,
            "blocked": self.blocked,
        }


@dataclass
class RateLimitResult:
    allowed: bool
    current_count: int
    reset_time: Optional[float] = None
    retry_after: Optional[int] = None


LOGIN_POLICY = RateLimitPolicy(
    name="login",
    max_requests=config.RATE_LIMIT_LOGIN_MAX,
    window_seconds=config.RATE_LIMIT_LOGIN_WINDOW,
    max_requests_long=config.RATE_LIMIT_LOGIN_MAX_LONG,
    long_window_seconds=config.RATE_LIMIT_LOGIN_WINDOW_LONG,
)
ADMIN_POLICY = RateLimitPolicy(
    name="admin",
    max_requests=config.RATE_LIMIT_ADMIN_MAX,
    window_seconds=config.RATE_LIMIT_ADMIN_WINDOW,
)
GENERAL_POLICY = RateLimitPolicy(
    name="general",
    max_requests=config.RATE_LIMIT_GENERAL_MAX,
    window_seconds=config.RATE_LIMIT_GENERAL_WINDOW,
)


def _retry_after(reset_time: float, now: float) -> int:
    return max(0, math.ceil(reset_time - now))


def apply_policy(
    record: Optional[RateLimitRecord], policy: RateLimitPolicy, now: float
) -> tuple[RateLimitRecord, RateLimitResult]:
    """Count one request against ``record``.

    Returns the record to persist and the decision. A blocked record that has
    not expired is returned unchanged (the request is denied but not counted).
    """
    if record is None or now >= record.reset_time:
        fresh = RateLimitRecord(count=1, reset_time=now + policy.window_seconds, first_attempt_time=now)
        return fresh, RateLimitResult(allowed=True, current_count=1, reset_time=fresh.reset_time)

    if record.blocked:
        return record, RateLimitResult(
            allowed=False,
            current_count=record.count,
            reset_time=record.reset_time,
            retry_after=_retry_after(record.reset_time, now),
        )

    first_attempt = record.first_attempt_time if record.first_attempt_time is not None else now
    updated = replace(record, count=record.count + 1, first_attempt_time=first_attempt)

    if policy.escalating:
        if now - first_attempt < policy.long_window_seconds and updated.count > policy.max_requests_long:
            updated.blocked = True
            updated.reset_time = now + policy.long_window_seconds
        elif updated.count > policy.max_requests:
            # Slide the short window while the client keeps trying
            updated.reset_time = now + policy.window_seconds
    else:
        updated.blocked = updated.count > policy.max_requests

    if updated.blocked:
        return updated, RateLimitResult(
            allowed=False,
            current_count=updated.count,
            reset_time=updated.reset_time,
            retry_after=_retry_after(updated.reset_time, now),
        )
    return updated, RateLimitResult(allowed=True, current_count=updated.count, reset_time=updated.reset_time)


class InMemoryRateLimitStore:
    """Bounded in-process store used when the database cannot be reached"""

    def __init__(self, max_entries: int = config.RATE_LIMIT_FALLBACK_MAX_ENTRIES, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._storage: dict[str, RateLimitRecord] = {}
        self._lock = Lock()

    @staticmethod
    def _key(client_id: str, category: str) -> str:
        return f"{client_id}:{category}"

    def get(self, client_id: str, category: str) -> Optional[RateLimitRecord]:
        key = self._key(client_id, category)
        with self._lock:
            record = self._storage.get(key)
            if record is None:
                return None
            if self._clock() >= record.reset_time:
                del self._storage[key]
                return None
            return replace(record)

    def set(self, client_id: str, category: str, record: RateLimitRecord) -> None:
        key = self._key(client_id, category)
        with self._lock:
            if key not in self._storage and len(self._storage) >= self.max_entries:
                self._make_room()
            self._storage[key] = replace(record)

    def _make_room(self) -> None:
        now = self._clock()
        expired = []
        for checked, (key, record) in enumerate(self._storage.items()):
            if checked >= FALLBACK_SCAN_LIMIT or len(expired) >= FALLBACK_EXPIRED_BATCH:
                break
            if now >= record.reset_time:
                expired.append(key)
        for key in expired:
            del self._storage[key]

        if len(self._storage) >= self.max_entries:
            oldest = heapq.nsmallest(
                FALLBACK_EVICT_BATCH, self._storage.items(), key=lambda item: item[1].reset_time
            )
            for key, _record in oldest:
                del self._storage[key]

    def delete(self, client_id: str, category: Optional[str] = None) -> int:
        with self._lock:
            if category is not None:
                return 1 if self._storage.pop(self._key(client_id, category), None) else 0
            prefix = f"{client_id}:"
            keys = [k for k in self._storage if k.startswith(prefix)]
            for key in keys:
                del self._storage[key]
            return len(keys)

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._storage.items() if now >= v.reset_time]
            for key in expired:
                del self._storage[key]
        return len(expired)

    def size(self) -> int:
        return len(self._storage)

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()


def _to_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def _to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _entry_to_record(entry: RateLimitEntry) -> RateLimitRecord:
    return RateLimitRecord(
        count=entry.count or 0,
        reset_time=_to_timestamp(entry.reset_time),
        first_attempt_time=_to_timestamp(entry.first_attempt_time or entry.created_at),
        blocked=bool(entry.blocked),
    )


class RateLimitingService:
    """Rate limit checks backed by the rate_limit_entries table"""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        fallback: Optional[InMemoryRateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.fallback = fallback or InMemoryRateLimitStore(clock=clock)

    def check_login_rate_limit(self, client_id: str) -> RateLimitResult:
        return self.check_rate_limit(client_id, LOGIN_POLICY)

    def check_admin_rate_limit(self, client_id: str) -> RateLimitResult:
        return self.check_rate_limit(client_id, ADMIN_POLICY)

    def check_rate_limit(self, client_id: str, policy: RateLimitPolicy) -> RateLimitResult:
        now = self._clock()
        try:
            return self._check_database(client_id, policy, now)
        except SQLAlchemyError as e:
            logger.error(f"🔒 Database rate limiting failed for {policy.name}, using in-memory fallback: {e}")
            return self._check_fallback(client_id, policy, now)

    def _check_database(
        self, client_id: str, policy: RateLimitPolicy, now: float, retry: bool = True
    ) -> RateLimitResult:
        db = self._session_factory()
        try:
            entry = (
                db.query(RateLimitEntry)
                .filter(
                    RateLimitEntry.identifier == client_id,
                    RateLimitEntry.endpoint == policy.name,
                )
                .with_for_update()
                .first()
            )
            record = _entry_to_record(entry) if entry else None
            updated, result = apply_policy(record, policy, now)

            if updated is not record:
                now_dt = _to_datetime(now)
                if entry is None:
                    db.add(
                        RateLimitEntry(
                            identifier=client_id,
                            endpoint=policy.name,
                            count=updated.count,
                            reset_time=_to_datetime(updated.reset_time),
                            first_attempt_time=_to_datetime(updated.first_attempt_time),
                            blocked=updated.blocked,
                            created_at=now_dt,
                            updated_at=now_dt,
                        )
                    )
                else:
                    entry.count = updated.count
                    entry.reset_time = _to_datetime(updated.reset_time)
                    entry.first_attempt_time = _to_datetime(updated.first_attempt_time)
                    entry.blocked = updated.blocked
                    entry.updated_at = now_dt
                db.commit()
            return result
        except IntegrityError:
            db.rollback()
            if not retry:
                raise
            logger.debug(f"🔁 Concurrent insert for {client_id}:{policy.name}, retrying as update")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        # A concurrent first request inserted the same row
        return self._check_database(client_id, policy, now, retry=False)

    def _check_fallback(self, client_id: str, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        record = self.fallback.get(client_id, policy.name)
        updated, result = apply_policy(record, policy, now)
        if updated is not record:
            self.fallback.set(client_id, policy.name, updated)
        return result

    def perform_periodic_cleanup(self) -> int:
        db_cleaned = 0
        memory_cleaned = 0

        db = self._session_factory()
        try:
            db_cleaned = (
                db.query(RateLimitEntry)
                .filter(RateLimitEntry.reset_time < _to_datetime(self._clock()))
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"🔒 Database rate limiting cleanup error: {e}")
        finally:
            db.close()

        memory_cleaned = self.fallback.cleanup()

        total = db_cleaned + memory_cleaned
        if total > 0:
            logger.info(f"🔒 Rate limiting cleanup: DB: {db_cleaned}, Memory: {memory_cleaned}, Total: {total}")
        return total

    def get_rate_limit_status(self, identifier: str, endpoint: str) -> Optional[RateLimitRecord]:
        db = self._session_factory()
        try:
            entry = (
                db.query(RateLimitEntry)
                .filter(RateLimitEntry.identifier == identifier, RateLimitEntry.endpoint == endpoint)
                .first()
            )
            if entry is not None:
                return _entry_to_record(entry)
        except SQLAlchemyError as e:
            logger.error(f"🔒 Rate limiting status check error: {e}")
        finally:
            db.close()
        return self.fallback.get(identifier, endpoint)

    def reset_rate_limit(self, identifier: str, endpoint: Optional[str] = None) -> bool:
        self.fallback.delete(identifier, endpoint)

        db = self._session_factory()
        try:
            query = db.query(RateLimitEntry).filter(RateLimitEntry.identifier == identifier)
            if endpoint:
                query = query.filter(RateLimitEntry.endpoint == endpoint)
            deleted = query.delete(synchronize_session=False)
            db.commit()
            logger.info(f"🔓 Rate limit reset for {identifier} ({endpoint or 'all'}): {deleted} entries")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"🔒 Rate limiting reset error: {e}")
            return False
        finally:
            db.close()


# Global service instance
rate_limiting_service = RateLimitingService()


# ==================== Periodic cleanup ====================

_cleanup_task: Optional[asyncio.Task] = None


async def _cleanup_loop(service: RateLimitingService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(service.perform_periodic_cleanup)
        except Exception as e:
            logger.error(f"❌ Rate limiting cleanup run failed: {e}")


def start_rate_limit_cleanup(
    service: Optional[RateLimitingService] = None,
    interval: float = config.RATE_LIMIT_CLEANUP_INTERVAL,
) -> asyncio.Task:
    """Start the background sweep on the running event loop (no-op if already running)"""
    global _cleanup_task
    if _cleanup_task is not None and not _cleanup_task.done():
        return _cleanup_task

    _cleanup_task = asyncio.get_running_loop().create_task(
        _cleanup_loop(service or rate_limiting_service, interval)
    )
    logger.info(f"🔒 Rate limiting periodic cleanup started (every {interval:g}s)")
    return _cleanup_task


async def stop_rate_limit_cleanup() -> None:
    global _cleanup_task
    if _cleanup_task is None:
        return
    _cleanup_task.cancel()
    try:
        await _cleanup_task
    except asyncio.CancelledError:
        pass
    _cleanup_task = None
    logger.info("🔒 Rate limiting periodic cleanup stopped")


# ==================== FastAPI dependencies ====================


def get_client_ip(request: Request, trusted_hops: Optional[int] = None) -> str:
    """
    Client key for rate limiting and security events

    X-Forwarded-For is only read behind ``TRUSTED_PROXY_HOPS`` proxies. Each
    proxy appends the address it saw, so the client is the N-th entry from the
    right; anything further left was written by the caller.
    """
    hops = config.TRUSTED_PROXY_HOPS if trusted_hops is None else trusted_hops
    forwarded = request.headers.get("X-Forwarded-For") if hops > 0 else None
    if forwarded:
        addresses = [part.strip() for part in forwarded.split(",") if part.strip()]
        if addresses:
            return addresses[max(len(addresses) - hops, 0)]
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def describe_window(seconds: int) -> str:
    for unit_seconds, unit in ((3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            amount = seconds // unit_seconds
            return f"{amount} {unit}{'s' if amount != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def _denial_detail(policy: RateLimitPolicy, result: RateLimitResult, retry_after: int) -> dict:
    locked = policy.escalating and result.current_count > policy.max_requests_long
    if locked:
        limit, window = policy.max_requests_long, policy.long_window_seconds
    else:
        limit, window = policy.max_requests, policy.window_seconds

    if policy.name == "login":
        message = (
            "Too many failed login attempts. Account temporarily locked."
            if locked
            else "Too many failed login attempts. Please wait before trying again."
        )
    elif policy.name == "admin":
        message = "Too many admin operations. Please wait before trying again."
    else:
        message = f"Rate limit exceeded. Maximum {limit} requests per {describe_window(window)}."

    return {
        "error": "Rate limit exceeded",
        "message": message,
        "retry_after": retry_after,
        "limit": limit,
        "window": describe_window(window),
    }


async def enforce_rate_limit(request: Request, policy: RateLimitPolicy, failure_retry_after: int) -> RateLimitResult:
    """
    Count the request against ``policy`` and raise if it must be rejected.

    Denied requests get a 429. Any unexpected limiter failure is fail-closed
    with a 503 so that breaking the limiter cannot be used to bypass it.
    """
    client_ip = get_client_ip(request)

    try:
        result = await run_in_threadpool(rate_limiting_service.check_rate_limit, client_ip, policy)
    except Exception as e:
        logger.error(f"❌ CRITICAL: {policy.name} rate limiting service failure: {e}")
        logger.warning(f"🔒 Denying {policy.name} request due to rate limiting error (fail-closed mode)")
        await security_monitor.log_event(
            SecurityEventType.API_ERROR,
            SecurityEventSeverity.CRITICAL,
            f"Rate limiting service failure for {policy.name}",
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
            metadata={"category": policy.name, "error": str(e), "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "Service temporarily unavailable",
                "message": "The service is experiencing technical difficulties. Please try again later.",
                "retry_after": failure_retry_after,
            },
            headers={"Retry-After": str(failure_retry_after)},
        ) from e

    if not result.allowed:
        retry_after = result.retry_after if result.retry_after is not None else policy.window_seconds
        detail = _denial_detail(policy, result, retry_after)
        logger.warning(
            f"🚫 Rate limit EXCEEDED for {policy.name}:{client_ip} - {result.current_count} requests"
        )
        await security_monitor.log_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            SecurityEventSeverity.HIGH if policy.name == "login" else SecurityEventSeverity.MEDIUM,
            f"{policy.name} rate limit exceeded",
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
            metadata={
                "category": policy.name,
                "attempts": result.current_count,
                "blocked_until": (
                    datetime.fromtimestamp(result.reset_time, tz=timezone.utc).isoformat()
                    if result.reset_time
                    else None
                ),
                "path": request.url.path,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers={"Retry-After": str(retry_after)},
        )

    limit = policy.max_requests_long if policy.escalating else policy.max_requests
    request.state.rate_limit_remaining = max(0, limit - result.current_count)
    request.state.rate_limit_limit = limit
    request.state.rate_limit_reset = int(result.reset_time) if result.reset_time else None
    return result


async def login_rate_limit(request: Request) -> None:
    await enforce_rate_limit(request, LOGIN_POLICY, failure_retry_after=300)


async def admin_rate_limit(request: Request) -> None:
    await enforce_rate_limit(request, ADMIN_POLICY, failure_retry_after=900)


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str = "general"):
    """
    Create a rate limiter dependency with specific parameters

    Example usage:
        contact_form_limit = create_rate_limiter(limit=5, window_seconds=3600, key_prefix="contact")

        @router.post("/contact")
        async def submit_contact(_: None = Depends(contact_form_limit)):
            ...
    """
    policy = RateLimitPolicy(name=key_prefix, max_requests=limit, window_seconds=window_seconds)

    async def rate_limiter(request: Request) -> None:
        await enforce_rate_limit(request, policy, failure_retry_after=window_seconds)

    return rate_limiter


general_rate_limit = create_rate_limiter(
    limit=GENERAL_POLICY.max_requests, window_seconds=GENERAL_POLICY.window_seconds, key_prefix="general"
)

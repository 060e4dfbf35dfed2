import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

from .. import config
from ..auth import require_admin
from ..cache import clear_cache, get_cache_stats
from ..database import SessionLocal
from ..performance_monitor import cpu_usage, memory_usage, performance_monitor
from ..rate_limiter import admin_rate_limit
from ..schemas import MessageResponse
from ..security_monitoring import security_monitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health", tags=["Health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_database() -> dict:
    """Run a trivial query and report how long it took"""
    db = SessionLocal()
    start = time.perf_counter()
    try:
        with performance_monitor.time_db_operation("health_check"):
            db.execute(text("SELECT 1"))
        return {"status": "connected", "response_time_ms": round((time.perf_counter() - start) * 1000, 2)}
    except Exception as e:
        logger.error(f"❌ Database health check failed: {e}")
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


def check_cache() -> dict:
    if not config.REDIS_URL:
        return {"status": "disabled"}
    stats = get_cache_stats()
    if not stats.get("available"):
        return {"status": "unavailable", "error": stats.get("error")}
    performance_monitor.update_cache_size(stats["keys"])
    return {"status": "connected", **{k: v for k, v in stats.items() if k != "available"}}


def check_webhook() -> dict:
    monitor_config = security_monitor.get_config()
    if not monitor_config["enabled"]:
        return {"status": "disabled"}
    return {"status": "configured" if monitor_config["webhook_url"] else "not_configured"}


@router.get("")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "uptime": performance_monitor.uptime(),
        "memory": memory_usage(),
        "environment": config.ENVIRONMENT,
        "version": config.APP_VERSION,
    }


@router.get("/diagnostic")
async def diagnostic():
    """Server process stats plus a live database ping"""
    return {
        "server": {
            "status": "running",
            "uptime": performance_monitor.uptime(),
            "memory": memory_usage(),
            "cpu": cpu_usage(),
        },
        "database": await run_in_threadpool(check_database),
        "timestamp": _now(),
    }


@router.get("/system-check")
async def system_check(request: Request):
    return {
        "services": {
            "database": await run_in_threadpool(check_database),
            "cache": await run_in_threadpool(check_cache),
            "security_webhook": check_webhook(),
        },
        "performance": {
            "memory_usage": memory_usage(),
            "uptime": performance_monitor.uptime(),
        },
        "security": {
            "https": request.url.scheme == "https"
            or request.headers.get("x-forwarded-proto") == "https",
        },
        "timestamp": _now(),
    }


@router.get("/performance")
async def performance_report():
    return performance_monitor.get_report()


@router.get("/performance/realtime")
async def performance_realtime():
    return performance_monitor.get_realtime_metrics()


@router.get("/performance/enhanced")
async def performance_enhanced():
    """Request report plus database and cache statistics"""
    return performance_monitor.get_enhanced_report()


@router.post(
    "/performance/clear",
    response_model=MessageResponse,
    dependencies=[Depends(admin_rate_limit)],
)
async def clear_performance_metrics(admin: dict = Depends(require_admin)):
    performance_monitor.clear_metrics()
    logger.info(f"🧹 Performance metrics cleared by {admin.get('sub')}")
    return MessageResponse(message="Performance metrics cleared")


@router.post(
    "/cache/clear",
    response_model=MessageResponse,
    dependencies=[Depends(admin_rate_limit)],
)
async def clear_response_cache(pattern: Optional[str] = None, admin: dict = Depends(require_admin)):
    """Drop cached responses whose URL contains ``pattern``, or all of them"""
    deleted = await run_in_threadpool(clear_cache, pattern)
    logger.info(f"🧹 Response cache cleared by {admin.get('sub')}")
    return MessageResponse(message=f"Cleared {deleted} cached responses")

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from .. import config, rate_limiter
from ..auth import require_admin
from ..rate_limiter import admin_rate_limit, general_rate_limit, get_client_ip
from ..schemas import (
    MessageResponse,
    RateLimitResetResponse,
    RateLimitStatusResponse,
    SecurityEventsResponse,
    SecurityStatsResponse,
)
from ..security_monitoring import SecurityEventSeverity, SecurityEventType, security_monitor

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/security",
    tags=["Security"],
    dependencies=[Depends(general_rate_limit)],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==================== Monitoring ====================


@router.get("/stats", response_model=SecurityStatsResponse)
async def get_security_stats(_admin: dict = Depends(require_admin)):
    """Security event counters and the monitoring configuration"""
    stats = security_monitor.get_statistics()
    return SecurityStatsResponse(
        data={**stats, "config": security_monitor.get_config()},
        timestamp=_now(),
    )


@router.get("/events", response_model=SecurityEventsResponse)
async def get_security_events(
    limit: int = Query(50, le=100),
    _admin: dict = Depends(require_admin),
):
    events = [event.to_dict() for event in security_monitor.get_recent_events(limit)]
    return SecurityEventsResponse(data=events, count=len(events), timestamp=_now())


@router.post("/test-event", response_model=MessageResponse)
async def trigger_test_event(request: Request, admin: dict = Depends(require_admin)):
    """Log a sample event to check the webhook wiring (development only)"""
    if config.ENVIRONMENT != "development":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Test events can only be triggered in development mode",
        )

    await security_monitor.log_event(
        SecurityEventType.API_ERROR,
        SecurityEventSeverity.MEDIUM,
        "Test security event from API",
        agent_id=admin.get("sub"),
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        metadata={"endpoint": request.url.path, "method": request.method, "test": True},
    )
    return MessageResponse(message="Test security event logged successfully")


# ==================== Rate limit administration ====================


@router.get("/rate-limits/{identifier}/{endpoint}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(identifier: str, endpoint: str, _admin: dict = Depends(require_admin)):
    service = rate_limiter.rate_limiting_service
    record = await run_in_threadpool(service.get_rate_limit_status, identifier, endpoint)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No rate limit entry")
    return RateLimitStatusResponse(identifier=identifier, endpoint=endpoint, **record.to_dict())


@router.delete(
    "/rate-limits/{identifier}",
    response_model=RateLimitResetResponse,
    dependencies=[Depends(admin_rate_limit)],
)
async def reset_rate_limit(
    identifier: str,
    endpoint: Optional[str] = None,
    admin: dict = Depends(require_admin),
):
    """Clear the counters for a client, optionally for one route category only"""
    service = rate_limiter.rate_limiting_service
    success = await run_in_threadpool(service.reset_rate_limit, identifier, endpoint)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reset rate limit",
        )

    logger.info(f"🔓 {admin.get('sub')} reset rate limits for {identifier} ({endpoint or 'all'})")
    return RateLimitResetResponse(success=True, identifier=identifier, endpoint=endpoint)

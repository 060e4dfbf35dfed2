"""
Security event monitoring
Centralized logging of security events with optional webhook forwarding
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 100


class SecurityEventType(str, Enum):
    AUTH_FAILURE = "auth_failure"
    AUTH_SUCCESS = "auth_success"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REFRESH = "token_refresh"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CALENDAR_CONNECTION_FAILED = "calendar_connection_failed"
    API_ERROR = "api_error"
    DATABASE_ERROR = "database_error"


class SecurityEventSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    SecurityEventSeverity.LOW: 1,
    SecurityEventSeverity.MEDIUM: 2,
    SecurityEventSeverity.HIGH: 3,
    SecurityEventSeverity.CRITICAL: 4,
}

_LOG_LEVELS = {
    SecurityEventSeverity.LOW: logging.INFO,
    SecurityEventSeverity.MEDIUM: logging.WARNING,
    SecurityEventSeverity.HIGH: logging.ERROR,
    SecurityEventSeverity.CRITICAL: logging.ERROR,
}


@dataclass
class SecurityEvent:
    type: SecurityEventType
    severity: SecurityEventSeverity
    message: str
    timestamp: datetime
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
        }

    def to_webhook_payload(self) -> dict[str, Any]:
        return {"event_type": "security_event", **self.to_dict()}


def parse_severity(value: Optional[str]) -> SecurityEventSeverity:
    """Parse a configured severity, falling back to MEDIUM"""
    try:
        return SecurityEventSeverity((value or "").lower())
    except ValueError:
        logger.warning(f"⚠️ Unknown security severity '{value}', using 'medium'")
        return SecurityEventSeverity.MEDIUM


class SecurityMonitoringService:
    """
    Centralized interface for logging security events.

    Every event lands in a bounded buffer used for statistics. Events at or
    above the minimum severity are also written to the log and, when
    monitoring is enabled, forwarded to the configured webhook.
    """

    def __init__(
        self,
        enabled: bool = config.SECURITY_MONITORING_ENABLED,
        webhook_url: Optional[str] = config.SECURITY_WEBHOOK_URL,
        min_severity: Any = config.SECURITY_MIN_SEVERITY,
        webhook_timeout: float = config.SECURITY_WEBHOOK_TIMEOUT,
        max_buffer_size: int = MAX_BUFFER_SIZE,
    ):
        self.enabled = enabled
        self.webhook_url = webhook_url
        self.webhook_timeout = webhook_timeout
        if isinstance(min_severity, SecurityEventSeverity):
            self.min_severity = min_severity
        else:
            self.min_severity = parse_severity(min_severity)
        self._buffer: deque[SecurityEvent] = deque(maxlen=max_buffer_size)

        if self.enabled:
            logger.info("🔒 Security Monitoring Service enabled")
            if self.webhook_url:
                logger.info("🔒 Security integrations: Webhook")
            else:
                logger.warning("⚠️ No security monitoring integrations configured (local logging only)")
        else:
            logger.info(
                "⚠️ Security Monitoring Service disabled (set SECURITY_MONITORING_ENABLED=true to enable)"
            )

    async def log_event(
        self,
        event_type: SecurityEventType,
        severity: SecurityEventSeverity,
        message: str,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            type=SecurityEventType(event_type),
            severity=SecurityEventSeverity(severity),
            message=message,
            timestamp=datetime.now(timezone.utc),
            user_id=user_id,
            agent_id=agent_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata or {},
        )

        self._buffer.append(event)

        if not self.should_log_event(event):
            return event

        self._log_locally(event)

        if self.enabled and self.webhook_url:
            await self._send_to_webhook(event)

        return event

    def should_log_event(self, event: SecurityEvent) -> bool:
        return event.severity.rank >= self.min_severity.rank

    def _log_locally(self, event: SecurityEvent) -> None:
        logger.log(
            _LOG_LEVELS[event.severity],
            f"[Security {event.severity.value.upper()}] {event.type.value}: {event.message}",
            extra={
                "security_event": {
                    "type": event.type.value,
                    "severity": event.severity.value,
                    "user_id": event.user_id,
                    "agent_id": event.agent_id,
                    "ip_address": event.ip_address,
                    "metadata": event.metadata,
                }
            },
        )

    async def _send_to_webhook(self, event: SecurityEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                response = await client.post(self.webhook_url, json=event.to_webhook_payload())
            if response.status_code >= 400:
                logger.error(
                    f"❌ Security webhook rejected {event.type.value} event: HTTP {response.status_code}"
                )
        except Exception as e:
            logger.error(f"❌ Failed to send security event to webhook ({event.type.value}): {e}")

    def get_recent_events(self, limit: int = 50) -> list[SecurityEvent]:
        if limit <= 0:
            return []
        return list(self._buffer)[-limit:]

    def get_statistics(self) -> dict[str, Any]:
        events = list(self._buffer)
        return {
            "total_events": len(events),
            "events_by_type": dict(Counter(e.type.value for e in events)),
            "events_by_severity": dict(Counter(e.severity.value for e in events)),
            "recent_events": len(events),
        }

    def is_enabled(self) -> bool:
        return self.enabled

    def get_config(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "webhook_url": "***configured***" if self.webhook_url else None,
            "min_severity": self.min_severity.value,
        }

    def clear(self) -> None:
        self._buffer.clear()


# Global service instance
security_monitor = SecurityMonitoringService()

"""Unit tests for security event monitoring and webhook forwarding"""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from backoffice.security_monitoring import (
    SecurityEventSeverity,
    SecurityEventType,
    SecurityMonitoringService,
    parse_severity,
)

WEBHOOK_URL = "https://hooks.example.com/security"


@pytest.fixture
def mock_http_client():
    """Patch httpx.AsyncClient used for webhook delivery"""
    client = MagicMock()
    client.post = AsyncMock(return_value=httpx.Response(200))
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    with patch("backoffice.security_monitoring.httpx.AsyncClient", return_value=client):
        yield client


def test_parse_severity_falls_back_to_medium():
    assert parse_severity("HIGH") is SecurityEventSeverity.HIGH
    assert parse_severity("loud") is SecurityEventSeverity.MEDIUM
    assert parse_severity(None) is SecurityEventSeverity.MEDIUM


def test_severity_ordering():
    ranks = [s.rank for s in SecurityEventSeverity]
    assert ranks == sorted(ranks)
    assert SecurityEventSeverity.CRITICAL.rank > SecurityEventSeverity.LOW.rank


async def test_event_is_buffered_and_sent_to_webhook(mock_http_client):
    monitor = SecurityMonitoringService(enabled=True, webhook_url=WEBHOOK_URL, min_severity="medium")

    event = await monitor.log_event(
        SecurityEventType.AUTH_FAILURE,
        SecurityEventSeverity.HIGH,
        "Failed admin login attempt",
        ip_address="203.0.113.9",
        metadata={"username": "adm***"},
    )

    assert monitor.get_recent_events() == [event]
    mock_http_client.post.assert_awaited_once()
    url = mock_http_client.post.call_args.args[0]
    payload = mock_http_client.post.call_args.kwargs["json"]
    assert url == WEBHOOK_URL
    assert payload["event_type"] == "security_event"
    assert payload["type"] == "auth_failure"
    assert payload["severity"] == "high"
    assert payload["ip_address"] == "203.0.113.9"
    assert payload["metadata"] == {"username": "adm***"}
    assert payload["timestamp"].endswith("+00:00")


async def test_events_below_threshold_are_buffered_but_not_sent(mock_http_client, caplog):
    monitor = SecurityMonitoringService(enabled=True, webhook_url=WEBHOOK_URL, min_severity="high")

    with caplog.at_level(logging.INFO, logger="backoffice.security_monitoring"):
        await monitor.log_event(SecurityEventType.API_ERROR, SecurityEventSeverity.MEDIUM, "minor")

    assert len(monitor.get_recent_events()) == 1
    mock_http_client.post.assert_not_awaited()
    assert "minor" not in caplog.text


async def test_disabled_monitor_logs_locally_only(mock_http_client, caplog):
    monitor = SecurityMonitoringService(enabled=False, webhook_url=WEBHOOK_URL)

    with caplog.at_level(logging.WARNING, logger="backoffice.security_monitoring"):
        await monitor.log_event(SecurityEventType.RATE_LIMIT_EXCEEDED, SecurityEventSeverity.MEDIUM, "slow down")

    mock_http_client.post.assert_not_awaited()
    assert "[Security MEDIUM] rate_limit_exceeded: slow down" in caplog.text


async def test_webhook_failures_do_not_propagate(mock_http_client, caplog):
    mock_http_client.post.side_effect = httpx.ConnectError("connection refused")
    monitor = SecurityMonitoringService(enabled=True, webhook_url=WEBHOOK_URL)

    with caplog.at_level(logging.ERROR, logger="backoffice.security_monitoring"):
        await monitor.log_event(SecurityEventType.DATABASE_ERROR, SecurityEventSeverity.CRITICAL, "db down")

    assert "Failed to send security event to webhook" in caplog.text


async def test_webhook_error_status_is_logged(mock_http_client, caplog):
    mock_http_client.post.return_value = httpx.Response(502)
    monitor = SecurityMonitoringService(enabled=True, webhook_url=WEBHOOK_URL)

    with caplog.at_level(logging.ERROR, logger="backoffice.security_monitoring"):
        await monitor.log_event(SecurityEventType.API_ERROR, SecurityEventSeverity.HIGH, "bad gateway")

    assert "HTTP 502" in caplog.text


async def test_buffer_is_bounded_and_limit_applies():
    monitor = SecurityMonitoringService(enabled=False, max_buffer_size=100)
    for i in range(105):
        await monitor.log_event(SecurityEventType.API_ERROR, SecurityEventSeverity.LOW, f"event {i}")

    assert len(monitor.get_recent_events(limit=1000)) == 100
    assert [e.message for e in monitor.get_recent_events(limit=2)] == ["event 103", "event 104"]
    assert monitor.get_recent_events(limit=0) == []
    assert monitor.get_recent_events(limit=-5) == []


async def test_statistics_and_config():
    monitor = SecurityMonitoringService(enabled=True, webhook_url=None, min_severity="low")
    await monitor.log_event(SecurityEventType.AUTH_FAILURE, SecurityEventSeverity.MEDIUM, "a")
    await monitor.log_event(SecurityEventType.AUTH_FAILURE, SecurityEventSeverity.HIGH, "b")
    await monitor.log_event(SecurityEventType.AUTH_SUCCESS, SecurityEventSeverity.LOW, "c")

    stats = monitor.get_statistics()

    assert stats["total_events"] == 3
    assert stats["events_by_type"] == {"auth_failure": 2, "auth_success": 1}
    assert stats["events_by_severity"] == {"medium": 1, "high": 1, "low": 1}
    assert monitor.is_enabled()
    assert monitor.get_config() == {"enabled": True, "webhook_url": None, "min_severity": "low"}


def test_config_masks_webhook_url():
    monitor = SecurityMonitoringService(enabled=True, webhook_url=WEBHOOK_URL)
    assert monitor.get_config()["webhook_url"] == "***configured***"

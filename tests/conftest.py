"""
Pytest configuration for back-office API tests

The environment is set before any backoffice module is imported because
configuration is read once at import time.
"""

import os
import tempfile
from pathlib import Path

import pytest
from passlib.context import CryptContext

ADMIN_PASSWORD = "correct-horse-battery"

_TEST_DIR = Path(tempfile.mkdtemp(prefix="backoffice-tests-"))

os.environ.update(
    {
        "ENVIRONMENT": "development",
        "DATABASE_URL": f"sqlite:///{_TEST_DIR / 'test.db'}",
        "SECRET_KEY": "test-secret-key",
        "ADMIN_USERNAME": "admin",
        "ADMIN_PASSWORD_HASH": CryptContext(schemes=["bcrypt"]).hash(ADMIN_PASSWORD),
        "LOGIN_FAILURE_DELAY_SECONDS": "0",
        "LOG_TO_FILE": "false",
        "LOG_DIR": str(_TEST_DIR / "logs"),
        "SECURITY_MONITORING_ENABLED": "false",
        "SECURITY_HEADERS_ENABLED": "true",
    }
)
os.environ.pop("REDIS_URL", None)
os.environ.pop("SECURITY_WEBHOOK_URL", None)

from fastapi.testclient import TestClient  # noqa: E402

from backoffice.auth import create_access_token  # noqa: E402
from backoffice.database import Base, SessionLocal, engine  # noqa: E402
from backoffice.performance_monitor import performance_monitor  # noqa: E402
from backoffice.rate_limiter import rate_limiting_service  # noqa: E402
from backoffice.security_monitoring import security_monitor  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh tables and empty in-memory monitors for every test"""
    from backoffice import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    performance_monitor.clear_metrics()
    security_monitor.clear()
    rate_limiting_service.fallback.clear()
    yield
    security_monitor.clear()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    """Test client for the full application (unhandled errors become 500 responses)"""
    from backoffice.main import app

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_token():
    return create_access_token("admin")


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}

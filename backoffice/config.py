import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"
APP_VERSION = "1.0.0"

# SQLite file for local development, PostgreSQL in production
DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{Path.cwd() / 'data' / 'backoffice.db'}"
if DATABASE_URL.startswith("postgres://"):
    # Heroku/Railway style URLs are not accepted by SQLAlchemy 1.4+
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Redis is optional; the response cache is disabled without it
REDIS_URL = os.getenv("REDIS_URL")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Admin login
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH")  # bcrypt hash
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))
# Constant delay on malformed login input to blunt credential enumeration
LOGIN_FAILURE_DELAY_SECONDS = float(os.getenv("LOGIN_FAILURE_DELAY_SECONDS", "1.0"))

# Rate limiting thresholds per route category
RATE_LIMIT_LOGIN_MAX = int(os.getenv("RATE_LIMIT_LOGIN_MAX", "5"))
RATE_LIMIT_LOGIN_WINDOW = int(os.getenv("RATE_LIMIT_LOGIN_WINDOW", "300"))
RATE_LIMIT_LOGIN_MAX_LONG = int(os.getenv("RATE_LIMIT_LOGIN_MAX_LONG", "10"))
RATE_LIMIT_LOGIN_WINDOW_LONG = int(os.getenv("RATE_LIMIT_LOGIN_WINDOW_LONG", "3600"))
RATE_LIMIT_ADMIN_MAX = int(os.getenv("RATE_LIMIT_ADMIN_MAX", "10"))
RATE_LIMIT_ADMIN_WINDOW = int(os.getenv("RATE_LIMIT_ADMIN_WINDOW", "900"))
RATE_LIMIT_GENERAL_MAX = int(os.getenv("RATE_LIMIT_GENERAL_MAX", "100"))
RATE_LIMIT_GENERAL_WINDOW = int(os.getenv("RATE_LIMIT_GENERAL_WINDOW", "60"))
RATE_LIMIT_CLEANUP_INTERVAL = int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL", "600"))  # 10 minutes
RATE_LIMIT_FALLBACK_MAX_ENTRIES = int(os.getenv("RATE_LIMIT_FALLBACK_MAX_ENTRIES", "10000"))
# Reverse proxies in front of the app; X-Forwarded-For is ignored when 0
TRUSTED_PROXY_HOPS = int(os.getenv("TRUSTED_PROXY_HOPS", "0"))

# Security monitoring
SECURITY_MONITORING_ENABLED = os.getenv("SECURITY_MONITORING_ENABLED", "false").lower() == "true"
SECURITY_WEBHOOK_URL = os.getenv("SECURITY_WEBHOOK_URL")
SECURITY_MIN_SEVERITY = os.getenv("SECURITY_MIN_SEVERITY", "medium").lower()
SECURITY_WEBHOOK_TIMEOUT = float(os.getenv("SECURITY_WEBHOOK_TIMEOUT", "10"))

# Response cache rules: "prefix=seconds[:private],prefix=seconds"
RESPONSE_CACHE_RULES = os.getenv("RESPONSE_CACHE_RULES", "/api/health/diagnostic=15")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if IS_PRODUCTION else "DEBUG").upper()
LOG_DIR = os.getenv("LOG_DIR", str(Path.cwd() / "logs"))
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"

# HTTP
SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

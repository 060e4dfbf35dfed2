import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .cache import ResponseCacheMiddleware
from .config import ALLOWED_ORIGINS, APP_VERSION, ENVIRONMENT, IS_PRODUCTION, SECURITY_HEADERS_ENABLED
from .database import init_db
from .logging_config import configure_logging
from .performance_monitor import PerformanceMiddleware
from .rate_limiter import get_client_ip, start_rate_limit_cleanup, stop_rate_limit_cleanup
from .routes.auth import router as auth_router
from .routes.health import router as health_router
from .routes.security import router as security_router
from .security_headers import SecurityHeadersMiddleware
from .security_monitoring import SecurityEventSeverity, SecurityEventType, security_monitor

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Back-office API starting up ({ENVIRONMENT})...")
    try:
        init_db()
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"❌ Failed to create database tables: {e}")

    start_rate_limit_cleanup()

    yield

    await stop_rate_limit_cleanup()
    logger.info("Application shutting down...")


app = FastAPI(title="Back-office API", version=APP_VERSION, lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}")
    await security_monitor.log_event(
        SecurityEventType.API_ERROR,
        SecurityEventSeverity.HIGH,
        f"Unhandled error on {request.method} {request.url.path}",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        metadata={"error": type(exc).__name__, "path": request.url.path, "method": request.method},
    )
    content = {"error": "Internal server error"}
    if not IS_PRODUCTION:
        content["message"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Registered innermost first; requests pass CORS, timing, security headers, then the response cache
app.add_middleware(ResponseCacheMiddleware)

if SECURITY_HEADERS_ENABLED:
    app.add_middleware(SecurityHeadersMiddleware, exclude_paths=["/docs", "/openapi.json"])
    logger.info("Security headers enabled")
else:
    logger.warning("Security headers DISABLED - only use in development!")

app.add_middleware(PerformanceMiddleware)

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(auth_router)
app.include_router(health_router)
app.include_router(security_router)


@app.get("/")
def root():
    return {"message": "Back-office API is running"}

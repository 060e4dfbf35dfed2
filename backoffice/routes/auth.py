import asyncio
import logging
from json import JSONDecodeError
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .. import config
from ..auth import ADMIN_ROLE, authenticate_admin, create_access_token
from ..rate_limiter import get_client_ip, login_rate_limit
from ..schemas import LoginResponse
from ..security_monitoring import SecurityEventSeverity, SecurityEventType, security_monitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

MAX_USERNAME_LENGTH = 100
MAX_PASSWORD_LENGTH = 1000


def mask_username(username: Any) -> str:
    if not isinstance(username, str) or not username:
        return "unknown"
    return f"{username[:3]}***"


def validate_login_payload(payload: Any) -> tuple[str, str]:
    """Return (username, password) or raise ValueError with a client-safe message"""
    if not isinstance(payload, dict):
        raise ValueError("Username and password are required")

    username = payload.get("username")
    password = payload.get("password")
    if not username or not password:
        raise ValueError("Username and password are required")
    if not isinstance(username, str) or not isinstance(password, str):
        raise ValueError("Invalid input format")
    if len(username) > MAX_USERNAME_LENGTH or len(password) > MAX_PASSWORD_LENGTH:
        raise ValueError("Invalid input length")
    return username, password


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(login_rate_limit)])
async def login(request: Request):
    """Exchange admin credentials for a bearer token"""
    client_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")

    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        payload = None

    try:
        username, password = validate_login_payload(payload)
    except ValueError as e:
        # Same delay as a failed credential check
        await asyncio.sleep(config.LOGIN_FAILURE_DELAY_SECONDS)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None

    if not authenticate_admin(username, password):
        await security_monitor.log_event(
            SecurityEventType.AUTH_FAILURE,
            SecurityEventSeverity.MEDIUM,
            "Failed admin login attempt",
            ip_address=client_ip,
            user_agent=user_agent,
            metadata={"username": mask_username(username)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    token = create_access_token(username)
    await security_monitor.log_event(
        SecurityEventType.AUTH_SUCCESS,
        SecurityEventSeverity.LOW,
        "Admin logged in",
        agent_id=username,
        ip_address=client_ip,
        user_agent=user_agent,
    )
    logger.info(f"✅ Admin login from {client_ip}")

    return LoginResponse(
        access_token=token,
        expires_in=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        username=username,
        role=ADMIN_ROLE,
    )

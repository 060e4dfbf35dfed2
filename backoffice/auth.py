import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from jose import jwt as jose_jwt
from passlib.context import CryptContext

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, ADMIN_PASSWORD_HASH, ADMIN_USERNAME, SECRET_KEY
from .rate_limiter import get_client_ip
from .security_monitoring import SecurityEventSeverity, SecurityEventType, security_monitor

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ADMIN_ROLE = "admin"

security = HTTPBearer(auto_error=False)

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class TokenExpiredError(Exception):
    """Raised when a bearer token is well-formed but past its expiry"""


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify password against bcrypt hash"""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except Exception as e:
        logger.error(f"Password verification error: {e}")
        return False


def authenticate_admin(
    username: str,
    password: str,
    expected_username: str = ADMIN_USERNAME,
    password_hash: Optional[str] = ADMIN_PASSWORD_HASH,
) -> bool:
    if not password_hash:
        logger.error("❌ ADMIN_PASSWORD_HASH not configured - admin login disabled")
        return False
    # Always run the hash check so both failure paths take the same time
    password_ok = verify_password(password, password_hash)
    return password_ok and username == expected_username


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT for an authenticated admin"""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": subject, "role": ADMIN_ROLE, "iat": now, "exp": expire}
    return jose_jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid

    Raises:
        TokenExpiredError: the signature is valid but the token has expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError as e:
        raise TokenExpiredError(str(e)) from e
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


async def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict[str, Any]:
    """Dependency guarding admin endpoints with a bearer JWT"""
    client_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")

    if credentials is None or credentials.scheme.lower() != "bearer":
        await security_monitor.log_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            SecurityEventSeverity.MEDIUM,
            f"Missing bearer token for {request.url.path}",
            ip_address=client_ip,
            user_agent=user_agent,
            metadata={"path": request.url.path, "method": request.method},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Please log in.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_access_token(credentials.credentials)
    except TokenExpiredError:
        await security_monitor.log_event(
            SecurityEventType.TOKEN_EXPIRED,
            SecurityEventSeverity.LOW,
            "Expired admin token presented",
            ip_address=client_ip,
            user_agent=user_agent,
            metadata={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please log in again.",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    if not payload or payload.get("role") != ADMIN_ROLE:
        await security_monitor.log_event(
            SecurityEventType.UNAUTHORIZED_ACCESS,
            SecurityEventSeverity.HIGH,
            f"Invalid bearer token for {request.url.path}",
            ip_address=client_ip,
            user_agent=user_agent,
            metadata={"path": request.url.path, "method": request.method},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.agent_id = payload.get("sub")
    return payload

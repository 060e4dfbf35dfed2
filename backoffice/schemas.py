from typing import Any, Optional

from pydantic import BaseModel


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    role: str


class MessageResponse(BaseModel):
    message: str


class SecurityEventResponse(BaseModel):
    type: str
    severity: str
    message: str
    timestamp: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = {}


class SecurityEventsResponse(BaseModel):
    success: bool = True
    data: list[SecurityEventResponse]
    count: int
    timestamp: str


class SecurityStatsResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]
    timestamp: str


class RateLimitStatusResponse(BaseModel):
    identifier: str
    endpoint: str
    count: int
    reset_time: float
    first_attempt_time: Optional[float] = None
    blocked: bool


class RateLimitResetResponse(BaseModel):
    success: bool
    identifier: str
    endpoint: Optional[str] = None

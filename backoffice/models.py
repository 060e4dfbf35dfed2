"""
Rate limiting persistence model
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from .database import Base


class RateLimitEntry(Base):
    __tablename__ = "rate_limit_entries"
    __table_args__ = (UniqueConstraint("identifier", "endpoint", name="uq_rate_limit_identifier_endpoint"),)

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(255), nullable=False, index=True)  # IP address or user ID
    endpoint = Column(String(100), nullable=False)  # Limit category: login, admin, general

    count = Column(Integer, nullable=False, default=0)
    reset_time = Column(DateTime, nullable=False, index=True)
    first_attempt_time = Column(DateTime, nullable=True)
    blocked = Column(Boolean, default=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

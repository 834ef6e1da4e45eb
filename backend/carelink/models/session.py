"""Provider and admin session tables plus their API schemas.

Both session kinds share one lifecycle: ``active`` until they expire (idle
or absolute) or are terminated, after which they never become active again.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class ProviderSession(SQLModel, table=True):
    __tablename__ = "provider_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'expired', 'terminated')",
            name="ck_provider_sessions_status",
        ),
    )

    id: str = Field(primary_key=True)  # 128-bit random hex, doubles as the bearer id
    subject_id: str = Field(index=True)
    content_ref: str
    status: str = Field(default=SessionStatus.ACTIVE.value)
    termination_reason: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    last_activity_at: datetime = Field(default_factory=utcnow)
    bound_ip: str | None = Field(default=None)
    bound_user_agent: str | None = Field(default=None)


class AdminSession(SQLModel, table=True):
    __tablename__ = "admin_sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'expired', 'terminated')",
            name="ck_admin_sessions_status",
        ),
    )

    id: str = Field(primary_key=True)
    secret_hash: str  # Argon2id PHC string of the cookie secret
    csrf_token: str
    status: str = Field(default=SessionStatus.ACTIVE.value)
    termination_reason: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    last_activity_at: datetime = Field(default_factory=utcnow)
    bound_ip: str | None = Field(default=None)
    bound_user_agent: str | None = Field(default=None)


# --- Pydantic request/response schemas ---


class ContentResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]
    pathways: list[str]
    remaining_minutes: int


class TerminateSessionRequest(BaseModel):
    session_id: str


class AdminLoginRequest(BaseModel):
    password: str


class AdminSessionResponse(BaseModel):
    authenticated: bool
    expires_at: datetime | None = None
    csrf_token: str | None = None

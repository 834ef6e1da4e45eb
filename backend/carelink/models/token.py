from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class TokenStatus(str, Enum):
    ACTIVE = "active"
    CODE_PENDING = "code_pending"  # redeemed, verification code outstanding
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TokenPurpose(str, Enum):
    ACCESS = "access"  # one-to-one disclosure link
    INVITE = "invite"  # referral invite link


class AccessToken(SQLModel, table=True):
    """Single-use bearer token. Only the SHA-256 of the secret is stored."""

    __tablename__ = "access_tokens"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'code_pending', 'used', 'expired', 'revoked')",
            name="ck_access_tokens_status",
        ),
        CheckConstraint("purpose IN ('access', 'invite')", name="ck_access_tokens_purpose"),
    )

    id_hash: str = Field(primary_key=True)
    subject_id: str = Field(index=True)  # candidate/provider the link was sent to
    content_ref: str  # secure message id or referral invite id
    purpose: str = Field(default=TokenPurpose.ACCESS.value)
    status: str = Field(default=TokenStatus.ACTIVE.value)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    used_at: datetime | None = Field(default=None)

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class CodeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class VerificationCode(SQLModel, table=True):
    __tablename__ = "verification_codes"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'verified', 'expired', 'blocked')",
            name="ck_verification_codes_status",
        ),
        CheckConstraint(
            "delivery_status IN ('pending', 'sent', 'failed')",
            name="ck_verification_codes_delivery_status",
        ),
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_verification_codes_attempts"),
        # A code can only be blocked once its attempts are exhausted
        CheckConstraint(
            "status != 'blocked' OR attempts >= max_attempts",
            name="ck_verification_codes_blocked",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    token_ref: str = Field(foreign_key="access_tokens.id_hash", index=True)
    subject_id: str
    content_ref: str
    code_hash: str  # SHA-256 of the 6-digit code
    status: str = Field(default=CodeStatus.PENDING.value)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    last_attempt_at: datetime | None = Field(default=None)
    verified_at: datetime | None = Field(default=None)
    delivery_status: str = Field(default=DeliveryStatus.PENDING.value)


# --- Pydantic request/response schemas ---


class RedeemTokenRequest(BaseModel):
    token: str = PydanticField(min_length=32)


class RedeemTokenResponse(BaseModel):
    success: bool = True
    code_id: str
    expires_at: datetime
    masked_recipient: str


class VerifyCodeRequest(BaseModel):
    code_id: str = PydanticField(min_length=1)
    code: str = PydanticField(pattern=r"^\d{6}$")


class VerifyCodeResponse(BaseModel):
    success: bool = True
    session_id: str
    expires_at: datetime

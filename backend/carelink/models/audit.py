"""Audit log table: append-only, hash-chained.

``seq`` is assigned by the store and gives the walk order for chain
verification; ``id`` is the public identifier referenced by
``previous_entry_id``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class ActorType(str, Enum):
    SYSTEM = "system"
    PROVIDER = "provider"
    COORDINATOR = "coordinator"
    ADMIN = "admin"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditAction(str, Enum):
    MESSAGE_CREATED = "MESSAGE_CREATED"
    TOKEN_GENERATED = "TOKEN_GENERATED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    TOKEN_VALIDATED = "TOKEN_VALIDATED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    CODE_SENT = "CODE_SENT"
    CODE_VERIFIED = "CODE_VERIFIED"
    CODE_FAILED = "CODE_FAILED"
    CODE_BLOCKED = "CODE_BLOCKED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_CONTEXT_MISMATCH = "SESSION_CONTEXT_MISMATCH"
    SESSION_IDLE_EXPIRED = "SESSION_IDLE_EXPIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    CONTENT_ACCESSED = "CONTENT_ACCESSED"
    CONTENT_DECRYPT_FAILED = "CONTENT_DECRYPT_FAILED"
    REFERRAL_CREATED = "REFERRAL_CREATED"
    REFERRAL_VIEWED = "REFERRAL_VIEWED"
    REFERRAL_ACCEPTED = "REFERRAL_ACCEPTED"
    REFERRAL_ACCEPT_FAILED = "REFERRAL_ACCEPT_FAILED"
    REFERRAL_DECLINED = "REFERRAL_DECLINED"
    REFERRAL_INVITE_SENT = "REFERRAL_INVITE_SENT"
    ADMIN_LOGIN_SUCCESS = "ADMIN_LOGIN_SUCCESS"
    ADMIN_LOGIN_FAILED = "ADMIN_LOGIN_FAILED"
    ADMIN_LOGIN_BLOCKED = "ADMIN_LOGIN_BLOCKED"
    ADMIN_LOGOUT = "ADMIN_LOGOUT"
    ADMIN_SESSION_CONTEXT_MISMATCH = "ADMIN_SESSION_CONTEXT_MISMATCH"
    ADMIN_API_UNAUTHORIZED = "ADMIN_API_UNAUTHORIZED"
    AUDIT_CHAIN_VERIFIED = "AUDIT_CHAIN_VERIFIED"


class AuditLogEntry(SQLModel, table=True):
    __tablename__ = "audit_logs"
    __table_args__ = (
        CheckConstraint("outcome IN ('success', 'failure')", name="ck_audit_logs_outcome"),
    )

    seq: int | None = Field(default=None, primary_key=True)
    id: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    timestamp: datetime = Field(default_factory=utcnow)
    actor_type: str = Field(default=ActorType.SYSTEM.value)
    actor_id: str = Field(default="system", index=True)
    action: str
    resource: str
    resource_id: str = Field(default="none")
    details_json: str = Field(default="{}")  # canonical JSON of the details dict
    outcome: str = Field(default=Outcome.SUCCESS.value)
    ip_masked: str | None = Field(default=None)
    previous_entry_id: str | None = Field(default=None)
    checksum: str


# --- Pydantic schemas ---


class AuditLogRead(BaseModel):
    id: str
    timestamp: datetime
    actor_type: str
    actor_id: str
    action: str
    resource: str
    resource_id: str
    details_json: str
    outcome: str
    previous_entry_id: str | None
    checksum: str

    model_config = {"from_attributes": True}


class ChainVerificationResponse(BaseModel):
    valid: bool
    checked: int
    errors: list[str]

"""Referral models: one referral, many invites, exactly one winner.

Includes SQLModel tables for referrals, their invites and the billing record
written on acceptance, plus Pydantic request/response schemas.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, EmailStr, Field as PydanticField
from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class ReferralStatus(str, Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class InviteStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    DECLINED = "declined"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class Referral(SQLModel, table=True):
    __tablename__ = "referrals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'accepted', 'expired', 'cancelled')",
            name="ck_referrals_status",
        ),
        CheckConstraint("urgency IN ('normal', 'urgent')", name="ck_referrals_urgency"),
        # accepted_by is set exactly when the referral is accepted
        CheckConstraint(
            "(status = 'accepted') = (accepted_by IS NOT NULL)",
            name="ck_referrals_accepted_by",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    subject_ref: str = Field(index=True)  # patient reference
    subject_initials: str
    subject_city: str
    pathways_json: str = Field(default="[]")
    urgency: str = Field(default=Urgency.NORMAL.value)
    notes: str | None = Field(default=None)
    created_by: str  # coordinator/partner id
    status: str = Field(default=ReferralStatus.OPEN.value)
    accepted_by: str | None = Field(default=None)  # candidate id of the winning invite
    accepted_at: datetime | None = Field(default=None)
    invite_count: int = Field(default=0)
    blob_id: str = Field(foreign_key="encrypted_blobs.id")
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @property
    def pathways(self) -> list[str]:
        return json.loads(self.pathways_json)


class ReferralInvite(SQLModel, table=True):
    __tablename__ = "referral_invites"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'viewed', 'accepted', 'expired', 'declined')",
            name="ck_referral_invites_status",
        ),
        UniqueConstraint("referral_ref", "candidate_id", name="uq_referral_invites_candidate"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    referral_ref: str = Field(foreign_key="referrals.id", index=True)
    candidate_id: str
    candidate_email: str
    candidate_name: str  # display name, the only identity shown to other candidates
    candidate_type: str = Field(default="other")
    token_ref: str = Field(foreign_key="access_tokens.id_hash", unique=True)
    status: str = Field(default=InviteStatus.PENDING.value)
    viewed_at: datetime | None = Field(default=None)
    responded_at: datetime | None = Field(default=None)
    sent_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class BillableCase(SQLModel, table=True):
    """Record written when a referral is accepted. Invoicing happens elsewhere."""

    __tablename__ = "billable_cases"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    referral_id: str = Field(foreign_key="referrals.id", unique=True)
    partner_id: str
    pathway: str
    accepted_by: str
    accepted_by_name: str
    created_at: datetime = Field(default_factory=utcnow)


# --- Pydantic request/response schemas ---


class CandidateIn(BaseModel):
    candidate_id: str = PydanticField(min_length=1)
    email: EmailStr
    name: str = PydanticField(min_length=1)
    candidate_type: Literal["fysio", "ergo", "diet", "other"] = "other"


class CreateReferralRequest(BaseModel):
    subject_ref: str = PydanticField(min_length=1)
    subject_initials: str = PydanticField(min_length=2, max_length=10)
    subject_city: str = PydanticField(min_length=1)
    pathways: list[str] = PydanticField(min_length=1)
    urgency: Urgency = Urgency.NORMAL
    notes: str | None = None
    created_by: str = PydanticField(min_length=1)
    intake: dict[str, Any]
    candidates: list[CandidateIn] = PydanticField(min_length=1, max_length=5)


class CreateReferralResponse(BaseModel):
    success: bool = True
    referral_id: str
    invites_sent: int


class InviteTokenRequest(BaseModel):
    invite_token: str = PydanticField(min_length=1)


class AcceptedByInfo(BaseModel):
    name: str
    accepted_at: datetime | None


class ReferralSummary(BaseModel):
    id: str
    subject_initials: str
    subject_city: str
    pathways: list[str]
    urgency: str
    notes: str | None
    status: str
    created_at: datetime
    expires_at: datetime


class ReferralViewResponse(BaseModel):
    success: bool = True
    referral: ReferralSummary
    invite_status: str
    can_accept: bool
    is_accepted_by_me: bool
    accepted_by_info: AcceptedByInfo | None = None


class AcceptReferralResponse(BaseModel):
    success: bool = True
    referral_id: str
    accepted_at: datetime

"""Secure one-to-one disclosure messages.

A message points at an encrypted blob holding the patient intake and is
disclosed to a single candidate through an access token.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, EmailStr, Field as PydanticField
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class MessageStatus(str, Enum):
    PENDING = "pending"
    ACCESSED = "accessed"
    EXPIRED = "expired"


class SecureMessage(SQLModel, table=True):
    __tablename__ = "secure_messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accessed', 'expired')",
            name="ck_secure_messages_status",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    subject_id: str = Field(index=True)  # patient reference
    candidate_id: str = Field(index=True)
    candidate_email: str
    blob_id: str = Field(foreign_key="encrypted_blobs.id")
    pathways_json: str = Field(default="[]")
    status: str = Field(default=MessageStatus.PENDING.value)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    accessed_at: datetime | None = Field(default=None)

    @property
    def pathways(self) -> list[str]:
        return json.loads(self.pathways_json)


# --- Pydantic request/response schemas ---


class CreateMessageRequest(BaseModel):
    subject_id: str = PydanticField(min_length=1)
    candidate_id: str = PydanticField(min_length=1)
    candidate_email: EmailStr
    pathways: list[str] = PydanticField(min_length=1)
    payload: dict[str, Any]


class CreateMessageResponse(BaseModel):
    success: bool = True
    message_id: str

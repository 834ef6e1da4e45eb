from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from carelink.store import utcnow


class KeyMode(str, Enum):
    KMS = "kms"  # DEK wrapped by the remote key service
    LOCAL = "local"  # DEK wrapped by a key derived from DEV_ENCRYPTION_KEY


class EncryptedBlob(SQLModel, table=True):
    """Envelope-encrypted payload. Written once, never updated."""

    __tablename__ = "encrypted_blobs"
    __table_args__ = (
        CheckConstraint("key_mode IN ('kms', 'local')", name="ck_encrypted_blobs_key_mode"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    ciphertext: bytes
    wrapped_key: bytes
    iv: bytes  # 12-byte AES-GCM nonce
    auth_tag: bytes  # 16-byte GCM tag
    key_mode: str = Field(default=KeyMode.KMS.value)
    algo: str = Field(default="aes-256-gcm")
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow)

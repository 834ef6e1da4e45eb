from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel


class RateLimitRecord(SQLModel, table=True):
    __tablename__ = "rate_limits"

    key: str = Field(primary_key=True)  # client identifier, usually the IP
    attempts: int = Field(default=0)
    window_start: datetime
    blocked_until: datetime | None = Field(default=None)

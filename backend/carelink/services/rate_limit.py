"""Fixed-window login rate limiting backed by the shared store.

A key (normally the client IP) gets ``max_attempts`` failures per window.
Reaching the limit blocks the key until ``blocked_until``; failures while
blocked do not extend the block.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from carelink.models.rate_limit import RateLimitRecord
from carelink.store import conditional_update, read_with_retry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining_attempts: int
    blocked_until: datetime | None = None
    retry_after_seconds: int = 0


class LoginRateLimiter:
    __slots__ = ("_max_attempts", "_window", "_block", "_now")

    def __init__(
        self,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        block_duration: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._max_attempts = max_attempts
        self._window = window
        self._block = block_duration
        self._now = clock

    def check(self, db: Session, key: str) -> RateLimitStatus:
        record = read_with_retry(db, lambda: db.get(RateLimitRecord, key))
        return self._status(record)

    def record_attempt(self, db: Session, key: str, success: bool) -> RateLimitStatus:
        """Count one login attempt. A success clears the key."""
        if success:
            self.clear(db, key)
            return RateLimitStatus(allowed=True, remaining_attempts=self._max_attempts)

        now = self._now()
        record = db.get(RateLimitRecord, key)
        if record is None:
            db.add(RateLimitRecord(key=key, attempts=1, window_start=now))
            try:
                db.commit()
            except IntegrityError:
                # Another request created the row first; count against it
                db.rollback()
                record = db.get(RateLimitRecord, key)
                if record is None:
                    return self._status(None)
            else:
                return self._block_if_exhausted(db, key)

        if self._is_blocked(record, now):
            return self._status(record)

        if self._window_elapsed(record, now) or record.blocked_until is not None:
            reset = conditional_update(
                db,
                RateLimitRecord,
                [RateLimitRecord.key == key, RateLimitRecord.window_start == record.window_start],
                {"attempts": 1, "window_start": now, "blocked_until": None},
            )
            if reset:
                return self._block_if_exhausted(db, key)

        conditional_update(
            db,
            RateLimitRecord,
            [RateLimitRecord.key == key],
            {"attempts": RateLimitRecord.attempts + 1},
        )
        return self._block_if_exhausted(db, key)

    def clear(self, db: Session, key: str) -> None:
        db.execute(delete(RateLimitRecord).where(RateLimitRecord.key == key))
        db.commit()

    def cleanup(self, db: Session) -> int:
        """Drop records older than two windows whose block has lapsed."""
        now = self._now()
        result = db.execute(
            delete(RateLimitRecord).where(
                RateLimitRecord.window_start < now - 2 * self._window,
                or_(RateLimitRecord.blocked_until.is_(None), RateLimitRecord.blocked_until < now),  # type: ignore[union-attr]
            )
        )
        db.commit()
        if result.rowcount:
            logger.info("Removed %d stale rate limit records", result.rowcount)
        return result.rowcount

    def _block_if_exhausted(self, db: Session, key: str) -> RateLimitStatus:
        record = db.get(RateLimitRecord, key, populate_existing=True)
        if record is None:
            # A successful login cleared the key in between
            return self._status(None)
        if record.attempts >= self._max_attempts and record.blocked_until is None:
            blocked = conditional_update(
                db,
                RateLimitRecord,
                [RateLimitRecord.key == key, RateLimitRecord.blocked_until.is_(None)],  # type: ignore[union-attr]
                {"blocked_until": self._now() + self._block},
            )
            db.refresh(record)
            if blocked:
                logger.warning("Login rate limit reached for %s, blocked until %s", key, record.blocked_until)
        return self._status(record)

    def _status(self, record: RateLimitRecord | None) -> RateLimitStatus:
        if record is None:
            return RateLimitStatus(allowed=True, remaining_attempts=self._max_attempts)
        now = self._now()
        if self._is_blocked(record, now):
            return RateLimitStatus(
                allowed=False,
                remaining_attempts=0,
                blocked_until=record.blocked_until,
                retry_after_seconds=math.ceil((record.blocked_until - now).total_seconds()),
            )
        if self._window_elapsed(record, now) or record.blocked_until is not None:
            return RateLimitStatus(allowed=True, remaining_attempts=self._max_attempts)
        remaining = max(self._max_attempts - record.attempts, 0)
        return RateLimitStatus(allowed=remaining > 0, remaining_attempts=remaining)

    @staticmethod
    def _is_blocked(record: RateLimitRecord, now: datetime) -> bool:
        return record.blocked_until is not None and now < record.blocked_until

    def _window_elapsed(self, record: RateLimitRecord, now: datetime) -> bool:
        return now - record.window_start > self._window

"""Six-digit one-time verification codes, bound to a redeemed access token.

The attempt counter is incremented with a conditional write before the
candidate is compared, so parallel guesses cannot exceed ``max_attempts``
between them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session

from carelink.errors import (
    AlreadyUsedError,
    BlockedError,
    DeliveryError,
    ExpiredError,
    NotFoundError,
    WrongCodeError,
)
from carelink.models.token import AccessToken
from carelink.models.verification import CodeStatus, DeliveryStatus, VerificationCode
from carelink.services.notifier import Notifier, compose_code_message, mask_email
from carelink.services.tokens import TokenStore
from carelink.store import conditional_update, read_with_retry, utcnow
from carelink.utils.crypto import constant_time_equals, generate_numeric_code, sha256_hash

logger = logging.getLogger(__name__)


class VerificationCodeStore:
    __slots__ = ("_notifier", "_tokens", "_ttl", "_max_attempts", "_now")

    def __init__(
        self,
        notifier: Notifier,
        tokens: TokenStore,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._notifier = notifier
        self._tokens = tokens
        self._ttl = ttl
        self._max_attempts = max_attempts
        self._now = clock

    def issue(self, db: Session, token: AccessToken, recipient: str) -> tuple[str, str]:
        """Create a pending code for ``token`` and deliver it to ``recipient``.

        The code row is committed before delivery is attempted; if delivery
        fails, ``delivery_status=failed`` is persisted and DeliveryError
        propagates.
        """
        code = generate_numeric_code(6)
        now = self._now()
        record = VerificationCode(
            token_ref=token.id_hash,
            subject_id=token.subject_id,
            content_ref=token.content_ref,
            code_hash=sha256_hash(code.encode("utf-8")),
            max_attempts=self._max_attempts,
            created_at=now,
            expires_at=now + self._ttl,
        )
        db.add(record)
        db.commit()
        code_id = record.id

        subject, body = compose_code_message(code, int(self._ttl.total_seconds() // 60))
        try:
            self._notifier.send(recipient, subject, body)
        except DeliveryError:
            conditional_update(
                db,
                VerificationCode,
                [VerificationCode.id == code_id],
                {"delivery_status": DeliveryStatus.FAILED.value},
            )
            logger.warning("Verification code %s could not be delivered to %s", code_id, mask_email(recipient))
            raise

        conditional_update(
            db,
            VerificationCode,
            [VerificationCode.id == code_id],
            {"delivery_status": DeliveryStatus.SENT.value},
        )
        return code, code_id

    def verify(self, db: Session, code_id: str, candidate: str) -> VerificationCode:
        """Check ``candidate`` against the stored code.

        On success the code becomes ``verified`` and its originating token
        ``used``, in one transaction. Raises NotFoundError, ExpiredError,
        BlockedError, AlreadyUsedError or WrongCodeError.
        """
        record = read_with_retry(db, lambda: db.get(VerificationCode, code_id))
        if record is None:
            raise NotFoundError("verification code not found")

        if record.status == CodeStatus.BLOCKED.value:
            raise BlockedError("code blocked")
        if record.status == CodeStatus.EXPIRED.value:
            raise ExpiredError("code expired")
        if record.status != CodeStatus.PENDING.value:
            raise AlreadyUsedError(f"code status is {record.status}")

        # Expiry and exhaustion are decided before the candidate is looked at
        if self._now() > record.expires_at:
            self._transition(db, record, CodeStatus.EXPIRED)
            raise ExpiredError("code expired")
        if record.attempts >= record.max_attempts:
            self._transition(db, record, CodeStatus.BLOCKED)
            raise BlockedError("attempts exhausted")

        counted = conditional_update(
            db,
            VerificationCode,
            [
                VerificationCode.id == code_id,
                VerificationCode.status == CodeStatus.PENDING.value,
                VerificationCode.attempts < VerificationCode.max_attempts,
            ],
            {"attempts": VerificationCode.attempts + 1, "last_attempt_at": self._now()},
        )
        db.refresh(record)
        if not counted:
            if record.status == CodeStatus.PENDING.value and record.attempts >= record.max_attempts:
                self._transition(db, record, CodeStatus.BLOCKED)
                raise BlockedError("attempts exhausted")
            if record.status == CodeStatus.BLOCKED.value:
                raise BlockedError("code blocked")
            raise AlreadyUsedError(f"code status is {record.status}")

        if constant_time_equals(sha256_hash(candidate.encode("utf-8")), record.code_hash):
            return self._mark_verified(db, record)

        remaining = max(record.max_attempts - record.attempts, 0)
        if remaining == 0:
            self._transition(db, record, CodeStatus.BLOCKED)
            logger.warning("Verification code %s blocked after %d attempts", code_id, record.attempts)
        raise WrongCodeError(remaining)

    def _mark_verified(self, db: Session, record: VerificationCode) -> VerificationCode:
        won = conditional_update(
            db,
            VerificationCode,
            [VerificationCode.id == record.id, VerificationCode.status == CodeStatus.PENDING.value],
            {"status": CodeStatus.VERIFIED.value, "verified_at": self._now()},
            commit=False,
        )
        if not won:
            db.rollback()
            raise AlreadyUsedError("code verified concurrently")
        self._tokens.mark_used(db, record.token_ref, commit=False)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def _transition(db: Session, record: VerificationCode, status: CodeStatus) -> None:
        guards = [VerificationCode.id == record.id, VerificationCode.status == CodeStatus.PENDING.value]
        if status is CodeStatus.BLOCKED:
            guards.append(VerificationCode.attempts >= VerificationCode.max_attempts)
        conditional_update(db, VerificationCode, guards, {"status": status.value})
        db.refresh(record)

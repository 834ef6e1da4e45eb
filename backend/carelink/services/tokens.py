from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlmodel import Session

from carelink.errors import AlreadyUsedError, ExpiredError, NotFoundError
from carelink.models.token import AccessToken, TokenPurpose, TokenStatus
from carelink.store import conditional_update, read_with_retry, utcnow
from carelink.utils.crypto import generate_secret, sha256_hash

logger = logging.getLogger(__name__)


def hash_token(secret: str) -> str:
    """SHA-256 of the bearer secret; used for both storage and lookup."""
    return sha256_hash(secret.encode("utf-8"))


class TokenStore:
    """Single-use opaque bearer tokens (access links and invite links).

    The secret is returned exactly once by ``issue`` and never stored; the
    table is keyed by its hash.
    """

    __slots__ = ("_default_ttl", "_now")

    def __init__(
        self,
        default_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._default_ttl = default_ttl
        self._now = clock

    def issue(
        self,
        db: Session,
        subject_id: str,
        content_ref: str,
        purpose: TokenPurpose = TokenPurpose.ACCESS,
        ttl: timedelta | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[str, str]:
        """Add a new active token to the session and return ``(secret, id_hash)``.

        The caller commits, so tokens can be written in the same batch as
        the record they grant access to.
        """
        secret = generate_secret(32)
        id_hash = hash_token(secret)
        now = self._now()
        db.add(
            AccessToken(
                id_hash=id_hash,
                subject_id=subject_id,
                content_ref=content_ref,
                purpose=purpose.value,
                status=TokenStatus.ACTIVE.value,
                created_at=now,
                expires_at=expires_at or now + (ttl or self._default_ttl),
            )
        )
        return secret, id_hash

    def lookup(self, db: Session, secret: str) -> AccessToken:
        """Non-consuming lookup with lazy expiry.

        Raises NotFoundError for unknown secrets and ExpiredError (moving an
        active token to ``expired``) when the token is past its expiry.
        """
        id_hash = hash_token(secret)
        token = read_with_retry(db, lambda: db.get(AccessToken, id_hash))
        if token is None:
            raise NotFoundError("token not found")
        if self._now() > token.expires_at:
            self._expire(db, token)
            raise ExpiredError("token expired")
        return token

    def redeem(self, db: Session, secret: str) -> AccessToken:
        """Move an active token to ``code_pending``, exactly once.

        Of N concurrent redeemers of the same secret, one succeeds; the rest
        see AlreadyUsedError.
        """
        token = self.lookup(db, secret)
        if token.status != TokenStatus.ACTIVE.value:
            raise AlreadyUsedError(f"token status is {token.status}")

        won = conditional_update(
            db,
            AccessToken,
            [
                AccessToken.id_hash == token.id_hash,
                AccessToken.status == TokenStatus.ACTIVE.value,
            ],
            {"status": TokenStatus.CODE_PENDING.value},
        )
        if not won:
            raise AlreadyUsedError("token redeemed concurrently")
        db.refresh(token)
        return token

    def mark_used(self, db: Session, id_hash: str, *, commit: bool = True) -> bool:
        return conditional_update(
            db,
            AccessToken,
            [
                AccessToken.id_hash == id_hash,
                AccessToken.status.in_(  # type: ignore[attr-defined]
                    [TokenStatus.ACTIVE.value, TokenStatus.CODE_PENDING.value]
                ),
            ],
            {"status": TokenStatus.USED.value, "used_at": self._now()},
            commit=commit,
        )

    def revoke(self, db: Session, id_hash: str) -> bool:
        revoked = conditional_update(
            db,
            AccessToken,
            [
                AccessToken.id_hash == id_hash,
                AccessToken.status.in_(  # type: ignore[attr-defined]
                    [TokenStatus.ACTIVE.value, TokenStatus.CODE_PENDING.value]
                ),
            ],
            {"status": TokenStatus.REVOKED.value},
        )
        if revoked:
            logger.info("Revoked token %s...", id_hash[:12])
        return revoked

    def _expire(self, db: Session, token: AccessToken) -> None:
        conditional_update(
            db,
            AccessToken,
            [
                AccessToken.id_hash == token.id_hash,
                AccessToken.status.in_(  # type: ignore[attr-defined]
                    [TokenStatus.ACTIVE.value, TokenStatus.CODE_PENDING.value]
                ),
            ],
            {"status": TokenStatus.EXPIRED.value},
        )
        db.refresh(token)

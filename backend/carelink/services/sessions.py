"""Short-lived provider sessions and cookie-backed admin sessions.

Both are bound to the client IP and user agent they were opened from, and
expire on idle time as well as absolute age. Once a session leaves
``active`` it never comes back: every transition is a conditional write
guarded on ``status='active'``.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from argon2 import PasswordHasher
from sqlalchemy import update
from sqlmodel import Session

from carelink.errors import UnauthorizedError
from carelink.models.audit import ActorType, AuditAction, Outcome
from carelink.models.session import AdminSession, ProviderSession, SessionStatus
from carelink.services.audit import AuditLog
from carelink.store import conditional_update, read_with_retry, utcnow
from carelink.utils.crypto import generate_secret, hash_password, sha256_hash, verify_password

logger = logging.getLogger(__name__)


def session_ref(session_id: str) -> str:
    """Stable, non-reversible reference to a session for audit entries."""
    return sha256_hash(session_id.encode("utf-8"))[:16]


class _SessionLifecycle:
    """Shared transitions for both session tables."""

    model: type[ProviderSession] | type[AdminSession]
    resource: str
    actor_type: ActorType
    mismatch_action: AuditAction

    def __init__(
        self,
        audit: AuditLog,
        ttl: timedelta,
        idle_timeout: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit
        self._ttl = ttl
        self._idle_timeout = idle_timeout
        self._now = clock

    def _check_live(self, db: Session, session, ip: str | None, user_agent: str | None):
        """Steps shared by every validate: context, idle time, absolute age."""
        if session.status != SessionStatus.ACTIVE.value:
            raise UnauthorizedError(f"session is {session.status}")

        if _differs(session.bound_ip, ip) or _differs(session.bound_user_agent, user_agent):
            self._finish(db, session, SessionStatus.TERMINATED, "context_mismatch")
            self._audit.append(
                db,
                action=self.mismatch_action,
                resource=self.resource,
                resource_id=session_ref(session.id),
                actor_type=self.actor_type,
                details={
                    "ip_changed": _differs(session.bound_ip, ip),
                    "user_agent_changed": _differs(session.bound_user_agent, user_agent),
                },
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            logger.warning("%s %s terminated on context mismatch", self.resource, session_ref(session.id))
            raise UnauthorizedError("session context mismatch")

        now = self._now()
        if now - session.last_activity_at > self._idle_timeout:
            self._finish(db, session, SessionStatus.EXPIRED, "idle_timeout")
            self._audit.append(
                db,
                action=AuditAction.SESSION_IDLE_EXPIRED,
                resource=self.resource,
                resource_id=session_ref(session.id),
                actor_type=self.actor_type,
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            raise UnauthorizedError("session idle timeout")

        if now > session.expires_at:
            self._finish(db, session, SessionStatus.EXPIRED, "absolute_timeout")
            self._audit.append(
                db,
                action=AuditAction.SESSION_EXPIRED,
                resource=self.resource,
                resource_id=session_ref(session.id),
                actor_type=self.actor_type,
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            raise UnauthorizedError("session expired")

        touched = conditional_update(
            db,
            self.model,
            [self.model.id == session.id, self.model.status == SessionStatus.ACTIVE.value],
            {"last_activity_at": now},
        )
        db.refresh(session)
        if not touched:
            raise UnauthorizedError("session ended concurrently")
        return session

    def _finish(self, db: Session, session, status: SessionStatus, reason: str) -> bool:
        done = conditional_update(
            db,
            self.model,
            [self.model.id == session.id, self.model.status == SessionStatus.ACTIVE.value],
            {"status": status.value, "termination_reason": reason},
        )
        db.refresh(session)
        return done

    def _terminate_id(self, db: Session, session_id: str, reason: str) -> bool:
        return conditional_update(
            db,
            self.model,
            [self.model.id == session_id, self.model.status == SessionStatus.ACTIVE.value],
            {"status": SessionStatus.TERMINATED.value, "termination_reason": reason},
        )

    def remaining_minutes(self, session) -> int:
        seconds = (session.expires_at - self._now()).total_seconds()
        return max(int(seconds // 60), 0)

    def sweep_expired(self, db: Session) -> int:
        """Expire active sessions past their absolute or idle deadline."""
        now = self._now()
        count = 0
        for reason, guard in (
            ("absolute_timeout", self.model.expires_at < now),
            ("idle_timeout", self.model.last_activity_at < now - self._idle_timeout),
        ):
            result = db.execute(
                update(self.model)
                .where(self.model.status == SessionStatus.ACTIVE.value, guard)
                .values(status=SessionStatus.EXPIRED.value, termination_reason=reason)
            )
            count += result.rowcount
        db.commit()
        if count:
            logger.info("Swept %d expired %s(s)", count, self.resource)
        return count


class ProviderSessionStore(_SessionLifecycle):
    model = ProviderSession
    resource = "provider_session"
    actor_type = ActorType.PROVIDER
    mismatch_action = AuditAction.SESSION_CONTEXT_MISMATCH

    def __init__(
        self,
        audit: AuditLog,
        ttl: timedelta = timedelta(minutes=30),
        idle_timeout: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(audit, ttl, idle_timeout, clock)

    def create(
        self,
        db: Session,
        content_ref: str,
        subject_id: str,
        ip: str | None,
        user_agent: str | None,
    ) -> ProviderSession:
        now = self._now()
        session = ProviderSession(
            id=secrets.token_hex(16),
            subject_id=subject_id,
            content_ref=content_ref,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self._ttl,
            bound_ip=ip,
            bound_user_agent=user_agent,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    def validate(
        self, db: Session, session_id: str, ip: str | None, user_agent: str | None
    ) -> ProviderSession:
        session = read_with_retry(db, lambda: db.get(ProviderSession, session_id))
        if session is None:
            raise UnauthorizedError("session not found")
        return self._check_live(db, session, ip, user_agent)

    def terminate(self, db: Session, session_id: str, reason: str = "user_logout") -> bool:
        return self._terminate_id(db, session_id, reason)


@dataclass
class AdminLogin:
    cookie: str  # "<id>:<secret>"
    csrf_token: str
    expires_at: datetime


class AdminSessionStore(_SessionLifecycle):
    """Admin sessions carried in an HttpOnly cookie ``<id>:<secret>``.

    Only an Argon2id hash of the secret is stored, so a leaked table does
    not yield usable cookies.
    """

    model = AdminSession
    resource = "admin_session"
    actor_type = ActorType.ADMIN
    mismatch_action = AuditAction.ADMIN_SESSION_CONTEXT_MISMATCH

    def __init__(
        self,
        audit: AuditLog,
        hasher: PasswordHasher,
        ttl: timedelta = timedelta(hours=8),
        idle_timeout: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(audit, ttl, idle_timeout, clock)
        self._hasher = hasher

    def verify_password(self, password_hash: str, candidate: str) -> bool:
        """Check a login password against its Argon2id PHC hash."""
        return verify_password(self._hasher, password_hash, candidate)

    def create(self, db: Session, ip: str | None, user_agent: str | None) -> AdminLogin:
        now = self._now()
        session_id = secrets.token_hex(16)
        secret = generate_secret(32)
        session = AdminSession(
            id=session_id,
            secret_hash=hash_password(self._hasher, secret),
            csrf_token=generate_secret(32),
            created_at=now,
            last_activity_at=now,
            expires_at=now + self._ttl,
            bound_ip=ip,
            bound_user_agent=user_agent,
        )
        db.add(session)
        db.commit()
        return AdminLogin(
            cookie=f"{session_id}:{secret}",
            csrf_token=session.csrf_token,
            expires_at=session.expires_at,
        )

    def validate(
        self, db: Session, cookie: str | None, ip: str | None, user_agent: str | None
    ) -> AdminSession:
        session_id, secret = _split_cookie(cookie)
        session = read_with_retry(db, lambda: db.get(AdminSession, session_id))
        if session is None:
            raise UnauthorizedError("admin session not found")
        if not verify_password(self._hasher, session.secret_hash, secret):
            raise UnauthorizedError("admin session secret mismatch")
        return self._check_live(db, session, ip, user_agent)

    @staticmethod
    def verify_csrf(session: AdminSession, token: str | None) -> bool:
        if not token:
            return False
        return hmac.compare_digest(session.csrf_token.encode(), token.encode())

    def terminate(self, db: Session, cookie: str | None, reason: str = "logout") -> bool:
        session_id, _ = _split_cookie(cookie)
        return self._terminate_id(db, session_id, reason)


def _split_cookie(cookie: str | None) -> tuple[str, str]:
    session_id, sep, secret = (cookie or "").partition(":")
    if not sep or not session_id or not secret:
        raise UnauthorizedError("malformed admin session cookie")
    return session_id, secret


def _differs(bound: str | None, current: str | None) -> bool:
    return bound is not None and bound != current

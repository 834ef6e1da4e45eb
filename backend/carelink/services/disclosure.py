"""One-to-one secure disclosure: link, code, short session, content.

The flow a candidate goes through:

1. A coordinator creates a disclosure. The payload is encrypted into a
   blob, an access token is issued and the link is emailed.
2. The candidate opens the link; the token is redeemed (exactly once) and
   a six-digit code is sent to the same address.
3. The candidate enters the code and gets a 30-minute session bound to
   their IP address and user agent.
4. Content is decrypted per request while the session is valid.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from carelink.errors import (
    BlockedError,
    CareLinkError,
    CryptoError,
    DeliveryError,
    ExpiredError,
    NotFoundError,
    WrongCodeError,
)
from carelink.models.audit import ActorType, AuditAction, Outcome
from carelink.models.message import CreateMessageRequest, MessageStatus, SecureMessage
from carelink.models.session import ProviderSession
from carelink.models.token import TokenPurpose
from carelink.models.verification import VerificationCode
from carelink.services.audit import AuditLog
from carelink.services.envelope import EnvelopeService
from carelink.services.notifier import Notifier, compose_disclosure_message, mask_email
from carelink.services.sessions import ProviderSessionStore, session_ref
from carelink.services.tokens import TokenStore, hash_token
from carelink.services.verification import VerificationCodeStore
from carelink.store import conditional_update, read_with_retry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CodeChallenge:
    code_id: str
    expires_at: datetime
    masked_recipient: str


@dataclass
class DisclosedContent:
    data: dict[str, Any]
    pathways: list[str]
    remaining_minutes: int


class DisclosureService:
    def __init__(
        self,
        envelope: EnvelopeService,
        tokens: TokenStore,
        codes: VerificationCodeStore,
        sessions: ProviderSessionStore,
        notifier: Notifier,
        audit: AuditLog,
        portal_base_url: str = "http://localhost:3000",
        token_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self._envelope = envelope
        self._tokens = tokens
        self._codes = codes
        self._sessions = sessions
        self._notifier = notifier
        self._audit = audit
        self._portal_base_url = portal_base_url.rstrip("/")
        self._token_ttl = token_ttl

    def create_disclosure(
        self, db: Session, request: CreateMessageRequest, ip: str | None = None
    ) -> tuple[SecureMessage, str]:
        """Encrypt the payload, store the message and email the access link.

        Returns the message and the link secret. Link delivery is best
        effort: the message stays valid and can be re-sent.
        """
        payload = json.dumps(request.payload, sort_keys=True).encode("utf-8")
        blob = self._envelope.store(db, payload)
        message = SecureMessage(
            subject_id=request.subject_id,
            candidate_id=request.candidate_id,
            candidate_email=str(request.candidate_email),
            blob_id=blob.id,
            pathways_json=json.dumps(request.pathways),
            expires_at=utcnow() + self._token_ttl,
        )
        db.add(message)
        secret, _ = self._tokens.issue(
            db,
            subject_id=request.subject_id,
            content_ref=message.id,
            purpose=TokenPurpose.ACCESS,
            expires_at=message.expires_at,
        )
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist disclosure for subject %s", request.subject_id)
            raise
        db.refresh(message)

        self._audit.append(
            db,
            action=AuditAction.MESSAGE_CREATED,
            resource="message",
            resource_id=message.id,
            actor_type=ActorType.COORDINATOR,
            details={"candidate_id": request.candidate_id, "pathways": request.pathways},
            ip=ip,
        )
        self._audit.append(
            db,
            action=AuditAction.TOKEN_GENERATED,
            resource="message",
            resource_id=message.id,
            details={"purpose": TokenPurpose.ACCESS.value},
        )

        subject, body = compose_disclosure_message(
            access_url=f"{self._portal_base_url}/access/{secret}",
            pathways=request.pathways,
        )
        delivered = True
        try:
            self._notifier.send(message.candidate_email, subject, body)
        except CareLinkError:
            delivered = False
            logger.warning("Access link for message %s not delivered", message.id)
        self._audit.append(
            db,
            action=AuditAction.NOTIFICATION_SENT,
            resource="message",
            resource_id=message.id,
            details={"recipient": mask_email(message.candidate_email)},
            outcome=Outcome.SUCCESS if delivered else Outcome.FAILURE,
        )
        return message, secret

    def redeem_access_token(self, db: Session, secret: str, ip: str | None = None) -> CodeChallenge:
        """Redeem a link token and send a verification code to the recipient."""
        try:
            if self._tokens.lookup(db, secret).purpose != TokenPurpose.ACCESS.value:
                raise NotFoundError("not an access token")
            token = self._tokens.redeem(db, secret)
        except CareLinkError as exc:
            self._audit_failure(db, AuditAction.TOKEN_VALIDATED, "token", hash_token(secret)[:16], exc, ip)
            raise

        message = self._message(db, token.content_ref)
        self._audit.append(
            db,
            action=AuditAction.TOKEN_VALIDATED,
            resource="message",
            resource_id=message.id,
            actor_type=ActorType.PROVIDER,
            actor_id=message.candidate_id,
            ip=ip,
        )

        try:
            _, code_id = self._codes.issue(db, token, message.candidate_email)
        except DeliveryError as exc:
            self._audit.append(
                db,
                action=AuditAction.CODE_SENT,
                resource="message",
                resource_id=message.id,
                details={"reason": type(exc).__name__, "recipient": mask_email(message.candidate_email)},
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            raise
        code = db.get(VerificationCode, code_id)
        self._audit.append(
            db,
            action=AuditAction.CODE_SENT,
            resource="message",
            resource_id=message.id,
            details={"code_id": code_id, "recipient": mask_email(message.candidate_email)},
            ip=ip,
        )
        return CodeChallenge(
            code_id=code_id,
            expires_at=code.expires_at,
            masked_recipient=mask_email(message.candidate_email),
        )

    def verify_code(
        self,
        db: Session,
        code_id: str,
        candidate: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> ProviderSession:
        """Check a verification code and open a provider session."""
        try:
            record = self._codes.verify(db, code_id, candidate)
        except CareLinkError as exc:
            action = AuditAction.CODE_BLOCKED if isinstance(exc, BlockedError) else AuditAction.CODE_FAILED
            details: dict[str, Any] = {"reason": type(exc).__name__}
            if isinstance(exc, WrongCodeError):
                details["remaining_attempts"] = exc.remaining_attempts
            self._audit.append(
                db,
                action=action,
                resource="verification_code",
                resource_id=code_id,
                actor_type=ActorType.PROVIDER,
                details=details,
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            raise

        session = self._sessions.create(db, record.content_ref, record.subject_id, ip, user_agent)
        self._audit.append(
            db,
            action=AuditAction.CODE_VERIFIED,
            resource="verification_code",
            resource_id=code_id,
            actor_type=ActorType.PROVIDER,
            ip=ip,
        )
        self._audit.append(
            db,
            action=AuditAction.SESSION_CREATED,
            resource="provider_session",
            resource_id=session_ref(session.id),
            actor_type=ActorType.PROVIDER,
            details={"message_id": record.content_ref},
            ip=ip,
        )
        return session

    def fetch_content(
        self,
        db: Session,
        session_id: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> DisclosedContent:
        """Validate the session and decrypt the message it grants."""
        session = self._sessions.validate(db, session_id, ip, user_agent)
        message = self._message(db, session.content_ref)

        try:
            plaintext = self._envelope.load_and_decrypt(db, message.blob_id)
        except CryptoError:
            self._audit.append(
                db,
                action=AuditAction.CONTENT_DECRYPT_FAILED,
                resource="message",
                resource_id=message.id,
                actor_type=ActorType.PROVIDER,
                outcome=Outcome.FAILURE,
                ip=ip,
            )
            raise

        first_access = conditional_update(
            db,
            SecureMessage,
            [SecureMessage.id == message.id, SecureMessage.status == MessageStatus.PENDING.value],
            {"status": MessageStatus.ACCESSED.value, "accessed_at": utcnow()},
        )
        self._audit.append(
            db,
            action=AuditAction.CONTENT_ACCESSED,
            resource="message",
            resource_id=message.id,
            actor_type=ActorType.PROVIDER,
            actor_id=message.candidate_id,
            details={"first_access": first_access},
            ip=ip,
        )
        return DisclosedContent(
            data=json.loads(plaintext),
            pathways=message.pathways,
            remaining_minutes=self._sessions.remaining_minutes(session),
        )

    def terminate_session(self, db: Session, session_id: str, ip: str | None = None) -> None:
        if not self._sessions.terminate(db, session_id):
            raise NotFoundError("no active session")
        self._audit.append(
            db,
            action=AuditAction.SESSION_TERMINATED,
            resource="provider_session",
            resource_id=session_ref(session_id),
            actor_type=ActorType.PROVIDER,
            ip=ip,
        )

    def _message(self, db: Session, message_id: str) -> SecureMessage:
        message = read_with_retry(db, lambda: db.get(SecureMessage, message_id))
        if message is None:
            raise NotFoundError("message not found")
        return message

    def _audit_failure(
        self,
        db: Session,
        action: AuditAction,
        resource: str,
        resource_id: str,
        exc: CareLinkError,
        ip: str | None,
    ) -> None:
        if isinstance(exc, ExpiredError):
            action = AuditAction.TOKEN_EXPIRED
        self._audit.append(
            db,
            action=action,
            resource=resource,
            resource_id=resource_id,
            actor_type=ActorType.PROVIDER,
            details={"reason": type(exc).__name__},
            outcome=Outcome.FAILURE,
            ip=ip,
        )

"""Referral fan-out and first-come claim.

A coordinator sends one referral to up to five candidates. Each candidate
gets an invite with its own link token. The first candidate to accept wins
the patient; everyone else sees who took it.

The claim is decided by one conditional write inside one transaction::

    UPDATE referrals SET status='accepted', accepted_by=?, accepted_at=?
    WHERE id=? AND status='open'

A zero row count means a concurrent accept already won. Reads that happen
before it only serve to fail fast.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from carelink.errors import (
    AlreadyAcceptedError,
    AlreadyUsedError,
    CareLinkError,
    ConflictError,
    DeliveryError,
    ExpiredError,
    InvalidInputError,
    NotFoundError,
    NotOpenError,
)
from carelink.models.audit import ActorType, AuditAction, Outcome
from carelink.models.referral import (
    BillableCase,
    CreateReferralRequest,
    InviteStatus,
    Referral,
    ReferralInvite,
    ReferralStatus,
    Urgency,
)
from carelink.models.token import TokenPurpose
from carelink.services.audit import AuditLog
from carelink.services.envelope import EnvelopeService
from carelink.services.notifier import Notifier, compose_invite_message, mask_email
from carelink.services.tokens import TokenStore, hash_token
from carelink.store import conditional_update, read_with_retry, utcnow

logger = logging.getLogger(__name__)

OPEN_INVITE_STATES = (InviteStatus.PENDING.value, InviteStatus.VIEWED.value)


@dataclass
class IssuedInvite:
    invite_id: str
    candidate_id: str
    candidate_email: str
    secret: str  # only ever returned here and in the invite link
    delivered: bool = False


@dataclass
class ReferralView:
    referral: Referral
    invite: ReferralInvite
    can_accept: bool
    is_accepted_by_me: bool
    accepted_by_name: str | None = None
    accepted_at: datetime | None = None


@dataclass
class AcceptResult:
    referral_id: str
    invite_id: str
    accepted_at: datetime


class ReferralClaimCoordinator:
    def __init__(
        self,
        envelope: EnvelopeService,
        tokens: TokenStore,
        notifier: Notifier,
        audit: AuditLog,
        portal_base_url: str = "http://localhost:3000",
        max_candidates: int = 5,
        expiry_normal: timedelta = timedelta(hours=168),
        expiry_urgent: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._envelope = envelope
        self._tokens = tokens
        self._notifier = notifier
        self._audit = audit
        self._portal_base_url = portal_base_url.rstrip("/")
        self._max_candidates = max_candidates
        self._expiry = {Urgency.NORMAL.value: expiry_normal, Urgency.URGENT.value: expiry_urgent}
        self._now = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_referral(
        self, db: Session, request: CreateReferralRequest, ip: str | None = None
    ) -> tuple[Referral, list[IssuedInvite]]:
        """Persist the referral, its invites and their tokens in one commit.

        The intake is encrypted before anything is written. Invite emails go
        out after the commit; a failed delivery is logged and audited but
        does not undo the referral.
        """
        candidates = request.candidates
        if not request.pathways:
            raise InvalidInputError("at least one pathway is required")
        if not 1 <= len(candidates) <= self._max_candidates:
            raise InvalidInputError(f"between 1 and {self._max_candidates} candidates required")
        if len({c.candidate_id for c in candidates}) != len(candidates):
            raise InvalidInputError("duplicate candidate")

        urgency = Urgency(request.urgency).value
        now = self._now()
        expires_at = now + self._expiry[urgency]

        intake = json.dumps(request.intake, sort_keys=True).encode("utf-8")
        blob = self._envelope.store(db, intake)
        referral = Referral(
            subject_ref=request.subject_ref,
            subject_initials=request.subject_initials,
            subject_city=request.subject_city,
            pathways_json=json.dumps(request.pathways),
            urgency=urgency,
            notes=request.notes,
            created_by=request.created_by,
            invite_count=len(candidates),
            blob_id=blob.id,
            created_at=now,
            expires_at=expires_at,
        )
        db.add(referral)

        tokens = [
            self._tokens.issue(
                db,
                subject_id=request.subject_ref,
                content_ref=referral.id,
                purpose=TokenPurpose.INVITE,
                expires_at=expires_at,
            )
            for _ in candidates
        ]
        # Invites reference their token rows, which must be written first
        db.flush()

        issued: list[IssuedInvite] = []
        for candidate, (secret, id_hash) in zip(candidates, tokens):
            invite = ReferralInvite(
                referral_ref=referral.id,
                candidate_id=candidate.candidate_id,
                candidate_email=str(candidate.email),
                candidate_name=candidate.name,
                candidate_type=candidate.candidate_type,
                token_ref=id_hash,
                sent_at=now,
                expires_at=expires_at,
            )
            db.add(invite)
            issued.append(
                IssuedInvite(
                    invite_id=invite.id,
                    candidate_id=candidate.candidate_id,
                    candidate_email=str(candidate.email),
                    secret=secret,
                )
            )

        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist referral for %s", request.created_by)
            raise
        db.refresh(referral)

        self._audit.append(
            db,
            action=AuditAction.REFERRAL_CREATED,
            resource="referral",
            resource_id=referral.id,
            actor_type=ActorType.COORDINATOR,
            actor_id=request.created_by,
            details={"invite_count": len(issued), "urgency": urgency},
            ip=ip,
        )

        for entry, candidate in zip(issued, candidates):
            entry.delivered = self._send_invite(db, referral, entry, candidate.name)

        logger.info(
            "Referral %s created with %d invites (%d delivered)",
            referral.id,
            len(issued),
            sum(1 for e in issued if e.delivered),
        )
        return referral, issued

    def _send_invite(self, db: Session, referral: Referral, entry: IssuedInvite, name: str) -> bool:
        subject, body = compose_invite_message(
            candidate_name=name,
            initials=referral.subject_initials,
            city=referral.subject_city,
            pathways=referral.pathways,
            urgency=referral.urgency,
            view_url=f"{self._portal_base_url}/referral/{entry.secret}",
            expires_at=referral.expires_at,
        )
        try:
            self._notifier.send(entry.candidate_email, subject, body)
        except DeliveryError:
            logger.warning("Invite %s could not be delivered to %s", entry.invite_id, mask_email(entry.candidate_email))
            delivered = False
        else:
            delivered = True

        self._audit.append(
            db,
            action=AuditAction.REFERRAL_INVITE_SENT,
            resource="referral_invite",
            resource_id=entry.invite_id,
            details={"referral_id": referral.id, "recipient": mask_email(entry.candidate_email)},
            outcome=Outcome.SUCCESS if delivered else Outcome.FAILURE,
        )
        return delivered

    # ------------------------------------------------------------------
    # View / accept / decline
    # ------------------------------------------------------------------

    def view_invite(self, db: Session, secret: str, ip: str | None = None) -> ReferralView:
        invite, referral = self._resolve(db, secret)
        self._apply_expiry(db, referral, invite)

        if referral.status == ReferralStatus.ACCEPTED.value:
            winner = self._winner(db, referral)
            return ReferralView(
                referral=referral,
                invite=invite,
                can_accept=False,
                is_accepted_by_me=invite.status == InviteStatus.ACCEPTED.value,
                accepted_by_name=winner.candidate_name if winner else None,
                accepted_at=referral.accepted_at,
            )

        if referral.status != ReferralStatus.OPEN.value or invite.status == InviteStatus.EXPIRED.value:
            raise ExpiredError("referral no longer open")

        if invite.status == InviteStatus.PENDING.value:
            first_view = conditional_update(
                db,
                ReferralInvite,
                [ReferralInvite.id == invite.id, ReferralInvite.status == InviteStatus.PENDING.value],
                {"status": InviteStatus.VIEWED.value, "viewed_at": self._now()},
            )
            db.refresh(invite)
            if first_view:
                self._audit.append(
                    db,
                    action=AuditAction.REFERRAL_VIEWED,
                    resource="referral_invite",
                    resource_id=invite.id,
                    actor_type=ActorType.PROVIDER,
                    actor_id=invite.candidate_id,
                    ip=ip,
                )

        return ReferralView(
            referral=referral,
            invite=invite,
            can_accept=invite.status in OPEN_INVITE_STATES,
            is_accepted_by_me=False,
        )

    def accept(self, db: Session, secret: str, ip: str | None = None) -> AcceptResult:
        """Claim the referral for this invite; exactly one accept ever wins.

        Every refusal is audited as ``REFERRAL_ACCEPT_FAILED`` before it is
        raised.
        """
        invite: ReferralInvite | None = None
        referral: Referral | None = None
        now = self._now()
        try:
            invite, referral = self._resolve(db, secret)
            self._check_claimable(db, referral, invite, now)
            self._claim(db, referral, invite, now)
        except CareLinkError as exc:
            self._audit_accept_failure(db, exc, secret, referral, invite, ip)
            raise

        logger.info("Referral %s accepted by candidate %s", referral.id, invite.candidate_id)
        self._expire_siblings(db, referral, invite)
        self._record_billable(db, referral, invite)
        self._audit.append(
            db,
            action=AuditAction.REFERRAL_ACCEPTED,
            resource="referral",
            resource_id=referral.id,
            actor_type=ActorType.PROVIDER,
            actor_id=invite.candidate_id,
            details={"invite_id": invite.id},
            ip=ip,
        )
        return AcceptResult(referral_id=referral.id, invite_id=invite.id, accepted_at=now)

    def _check_claimable(self, db: Session, referral: Referral, invite: ReferralInvite, now: datetime) -> None:
        # Fast-fail checks on a possibly stale read
        if invite.status == InviteStatus.ACCEPTED.value:
            raise AlreadyAcceptedError("invite already accepted", by_me=True, accepted_at=referral.accepted_at)
        if invite.status == InviteStatus.DECLINED.value:
            raise AlreadyUsedError("invite was declined")
        if invite.status == InviteStatus.EXPIRED.value:
            if referral.status == ReferralStatus.ACCEPTED.value:
                raise self._taken(db, referral)
            raise ExpiredError("invite expired")
        if now > invite.expires_at:
            self._expire_invite(db, invite)
            raise ExpiredError("invite expired")
        if referral.status == ReferralStatus.ACCEPTED.value:
            self._expire_invite(db, invite)
            raise self._taken(db, referral)
        if referral.status == ReferralStatus.OPEN.value and now > referral.expires_at:
            self._apply_expiry(db, referral, invite)
            raise ExpiredError("referral expired")
        if referral.status != ReferralStatus.OPEN.value:
            raise NotOpenError(f"referral is {referral.status}")

    def _claim(self, db: Session, referral: Referral, invite: ReferralInvite, now: datetime) -> None:
        # Both writes commit together or not at all
        db.commit()
        won = conditional_update(
            db,
            Referral,
            [Referral.id == referral.id, Referral.status == ReferralStatus.OPEN.value],
            {
                "status": ReferralStatus.ACCEPTED.value,
                "accepted_by": invite.candidate_id,
                "accepted_at": now,
            },
            commit=False,
        )
        if not won:
            db.rollback()
            raise self._lost_race(db, referral, invite)

        claimed = conditional_update(
            db,
            ReferralInvite,
            [ReferralInvite.id == invite.id, ReferralInvite.status.in_(OPEN_INVITE_STATES)],  # type: ignore[attr-defined]
            {"status": InviteStatus.ACCEPTED.value, "responded_at": now},
            commit=False,
        )
        if not claimed:
            db.rollback()
            raise AlreadyUsedError("invite changed during accept")
        self._tokens.mark_used(db, invite.token_ref, commit=False)
        db.commit()
        db.refresh(referral)
        db.refresh(invite)

    def decline(self, db: Session, secret: str, ip: str | None = None) -> ReferralInvite:
        invite, referral = self._resolve(db, secret)
        self._apply_expiry(db, referral, invite)

        declined = conditional_update(
            db,
            ReferralInvite,
            [ReferralInvite.id == invite.id, ReferralInvite.status.in_(OPEN_INVITE_STATES)],  # type: ignore[attr-defined]
            {"status": InviteStatus.DECLINED.value, "responded_at": self._now()},
        )
        db.refresh(invite)
        if not declined:
            if invite.status == InviteStatus.ACCEPTED.value:
                raise AlreadyAcceptedError("invite already accepted", by_me=True, accepted_at=referral.accepted_at)
            if invite.status == InviteStatus.EXPIRED.value:
                raise ExpiredError("invite expired")
            raise AlreadyUsedError(f"invite is {invite.status}")

        self._tokens.mark_used(db, invite.token_ref)
        self._audit.append(
            db,
            action=AuditAction.REFERRAL_DECLINED,
            resource="referral_invite",
            resource_id=invite.id,
            actor_type=ActorType.PROVIDER,
            actor_id=invite.candidate_id,
            details={"referral_id": referral.id},
            ip=ip,
        )
        return invite

    def sweep_expired(self, db: Session) -> int:
        """Expire open invites and referrals past their deadline."""
        now = self._now()
        invites = db.execute(
            update(ReferralInvite)
            .where(
                ReferralInvite.status.in_(OPEN_INVITE_STATES),  # type: ignore[attr-defined]
                ReferralInvite.expires_at < now,
            )
            .values(status=InviteStatus.EXPIRED.value)
        )
        referrals = db.execute(
            update(Referral)
            .where(Referral.status == ReferralStatus.OPEN.value, Referral.expires_at < now)
            .values(status=ReferralStatus.EXPIRED.value)
        )
        db.commit()
        count = invites.rowcount + referrals.rowcount
        if count:
            logger.info("Expired %d invite(s) and %d referral(s)", invites.rowcount, referrals.rowcount)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, db: Session, secret: str) -> tuple[ReferralInvite, Referral]:
        id_hash = hash_token(secret)
        try:
            token = self._tokens.lookup(db, secret)
        except ExpiredError:
            invite = self._invite_for(db, id_hash)
            if invite is not None:
                self._expire_invite(db, invite)
            raise
        if token.purpose != TokenPurpose.INVITE.value:
            raise NotFoundError("not an invite token")

        invite = self._invite_for(db, id_hash)
        if invite is None:
            raise NotFoundError("invite not found")
        referral = read_with_retry(db, lambda: db.get(Referral, invite.referral_ref))
        if referral is None:
            raise NotFoundError("referral not found")
        return invite, referral

    @staticmethod
    def _invite_for(db: Session, id_hash: str) -> ReferralInvite | None:
        return read_with_retry(
            db, lambda: db.exec(select(ReferralInvite).where(ReferralInvite.token_ref == id_hash)).first()
        )

    def _apply_expiry(self, db: Session, referral: Referral, invite: ReferralInvite) -> None:
        """Lazy expiry so readers never depend on the sweeper having run."""
        now = self._now()
        if referral.status == ReferralStatus.OPEN.value and now > referral.expires_at:
            conditional_update(
                db,
                Referral,
                [Referral.id == referral.id, Referral.status == ReferralStatus.OPEN.value],
                {"status": ReferralStatus.EXPIRED.value},
            )
            db.refresh(referral)
        if invite.status in OPEN_INVITE_STATES and (
            now > invite.expires_at or referral.status == ReferralStatus.EXPIRED.value
        ):
            self._expire_invite(db, invite)

    @staticmethod
    def _expire_invite(db: Session, invite: ReferralInvite) -> None:
        conditional_update(
            db,
            ReferralInvite,
            [ReferralInvite.id == invite.id, ReferralInvite.status.in_(OPEN_INVITE_STATES)],  # type: ignore[attr-defined]
            {"status": InviteStatus.EXPIRED.value},
        )
        db.refresh(invite)

    @staticmethod
    def _winner(db: Session, referral: Referral) -> ReferralInvite | None:
        if referral.accepted_by is None:
            return None
        return db.exec(
            select(ReferralInvite).where(
                ReferralInvite.referral_ref == referral.id,
                ReferralInvite.candidate_id == referral.accepted_by,
            )
        ).first()

    def _taken(self, db: Session, referral: Referral) -> AlreadyAcceptedError:
        winner = self._winner(db, referral)
        return AlreadyAcceptedError(
            "referral accepted by another candidate",
            accepted_by_name=winner.candidate_name if winner else None,
            accepted_at=referral.accepted_at,
        )

    def _lost_race(self, db: Session, referral: Referral, invite: ReferralInvite) -> ConflictError:
        db.refresh(referral)
        self._expire_invite(db, invite)
        if referral.status == ReferralStatus.ACCEPTED.value:
            return self._taken(db, referral)
        return NotOpenError(f"referral is {referral.status}")

    def _audit_accept_failure(
        self,
        db: Session,
        exc: CareLinkError,
        secret: str,
        referral: Referral | None,
        invite: ReferralInvite | None,
        ip: str | None,
    ) -> None:
        details: dict[str, Any] = {"reason": type(exc).__name__}
        if isinstance(exc, AlreadyAcceptedError):
            details["accepted_by_me"] = exc.by_me
        if invite is not None:
            details["invite_id"] = invite.id
        self._audit.append(
            db,
            action=AuditAction.REFERRAL_ACCEPT_FAILED,
            resource="referral" if referral is not None else "token",
            resource_id=referral.id if referral is not None else hash_token(secret)[:16],
            actor_type=ActorType.PROVIDER,
            actor_id=invite.candidate_id if invite is not None else "unknown",
            details=details,
            outcome=Outcome.FAILURE,
            ip=ip,
        )

    def _expire_siblings(self, db: Session, referral: Referral, winner: ReferralInvite) -> None:
        try:
            result = db.execute(
                update(ReferralInvite)
                .where(
                    ReferralInvite.referral_ref == referral.id,
                    ReferralInvite.id != winner.id,
                    ReferralInvite.status.in_(OPEN_INVITE_STATES),  # type: ignore[attr-defined]
                )
                .values(status=InviteStatus.EXPIRED.value)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not expire sibling invites of referral %s", referral.id)
            return
        logger.debug("Expired %d sibling invite(s) of referral %s", result.rowcount, referral.id)

    def _record_billable(self, db: Session, referral: Referral, winner: ReferralInvite) -> None:
        pathways = referral.pathways
        db.add(
            BillableCase(
                referral_id=referral.id,
                partner_id=referral.created_by,
                pathway=pathways[0] if pathways else "unknown",
                accepted_by=winner.candidate_id,
                accepted_by_name=winner.candidate_name,
            )
        )
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record billable case for referral %s", referral.id)

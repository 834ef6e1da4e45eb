"""Append-only, hash-chained audit log.

Each entry stores a SHA-256 checksum over its canonical content and the id
of the entry that was most recent when it was written. The predecessor is
read without a lock, so concurrent writers can both claim the same
predecessor: the chain is evidence of tampering, not a strict total order.
Walk order comes from the store-assigned ``seq`` column.

There is intentionally no update or delete API.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session, select

from carelink.models.audit import ActorType, AuditAction, AuditLogEntry, Outcome
from carelink.store import read_with_retry, utcnow
from carelink.utils.crypto import sha256_hash

logger = logging.getLogger(__name__)


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    errors: list[str] = field(default_factory=list)


def mask_ip(ip: str | None) -> str | None:
    """Drop the host part: ``203.0.113.42`` -> ``203.0.113.x``, IPv6 keeps /48."""
    if not ip:
        return None
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return "invalid"
    if addr.version == 4:
        network = ipaddress.ip_network(f"{addr}/24", strict=False)
        return f"{str(network.network_address).rsplit('.', 1)[0]}.x"
    network = ipaddress.ip_network(f"{addr}/48", strict=False)
    return f"{network.network_address}/48"


def canonical_content(entry: AuditLogEntry) -> str:
    """Canonical JSON of every field except ``checksum`` and ``seq``."""
    content = {
        "id": entry.id,
        "timestamp": entry.timestamp.isoformat(),
        "actor_type": entry.actor_type,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "details": entry.details_json,
        "outcome": entry.outcome,
        "ip_masked": entry.ip_masked,
        "previous_entry_id": entry.previous_entry_id,
    }
    return json.dumps(content, sort_keys=True, separators=(",", ":"))


def compute_checksum(entry: AuditLogEntry) -> str:
    return sha256_hash(canonical_content(entry).encode("utf-8"))


class AuditLog:
    def append(
        self,
        db: Session,
        *,
        action: AuditAction | str,
        resource: str,
        resource_id: str = "none",
        actor_type: ActorType | str = ActorType.SYSTEM,
        actor_id: str = "system",
        details: dict[str, Any] | None = None,
        outcome: Outcome | str = Outcome.SUCCESS,
        ip: str | None = None,
    ) -> str:
        """Write one entry and commit it. Returns the entry id.

        Callers commit their own state changes first; this commits the
        session. ``ip`` is masked before it is stored.
        """
        previous = read_with_retry(db, lambda: self._latest(db))
        entry = AuditLogEntry(
            timestamp=utcnow(),
            actor_type=_value(actor_type),
            actor_id=actor_id,
            action=_value(action),
            resource=resource,
            resource_id=resource_id,
            details_json=json.dumps(details or {}, sort_keys=True, separators=(",", ":"), default=str),
            outcome=_value(outcome),
            ip_masked=mask_ip(ip),
            previous_entry_id=previous.id if previous is not None else None,
            checksum="",
        )
        entry.checksum = compute_checksum(entry)
        db.add(entry)
        db.commit()
        return entry.id

    def verify_chain(
        self, db: Session, from_id: str | None = None, limit: int = 1000
    ) -> ChainVerification:
        """Recompute checksums and predecessor links, walking in ``seq`` order.

        With ``from_id`` the walk starts after that entry, and the first
        walked entry must point at it. Without it the walk starts at the
        beginning of the log, where the first entry must have no predecessor.
        """
        errors: list[str] = []
        stmt = select(AuditLogEntry).order_by(AuditLogEntry.seq).limit(limit)  # type: ignore[arg-type]
        expected_previous: str | None = None

        if from_id is not None:
            start = db.exec(select(AuditLogEntry).where(AuditLogEntry.id == from_id)).first()
            if start is None:
                return ChainVerification(valid=False, checked=0, errors=[f"Start entry {from_id} not found"])
            stmt = stmt.where(AuditLogEntry.seq > start.seq)  # type: ignore[operator]
            expected_previous = start.id

        entries = read_with_retry(db, lambda: db.exec(stmt).all())
        for entry in entries:
            if entry.previous_entry_id != expected_previous:
                errors.append(
                    f"Chain broken at entry {entry.id}: expected previous "
                    f"{expected_previous}, got {entry.previous_entry_id}"
                )
            if entry.checksum != compute_checksum(entry):
                errors.append(f"Checksum mismatch at entry {entry.id}")
            expected_previous = entry.id

        if errors:
            logger.warning("Audit chain verification found %d problem(s)", len(errors))
        return ChainVerification(valid=not errors, checked=len(entries), errors=errors)

    def for_resource(
        self, db: Session, resource: str, resource_id: str, limit: int = 100
    ) -> list[AuditLogEntry]:
        return list(
            db.exec(
                select(AuditLogEntry)
                .where(AuditLogEntry.resource == resource, AuditLogEntry.resource_id == resource_id)
                .order_by(AuditLogEntry.seq.desc())  # type: ignore[union-attr]
                .limit(limit)
            ).all()
        )

    def for_actor(self, db: Session, actor_id: str, limit: int = 100) -> list[AuditLogEntry]:
        return list(
            db.exec(
                select(AuditLogEntry)
                .where(AuditLogEntry.actor_id == actor_id)
                .order_by(AuditLogEntry.seq.desc())  # type: ignore[union-attr]
                .limit(limit)
            ).all()
        )

    def recent(self, db: Session, limit: int = 100) -> list[AuditLogEntry]:
        return list(
            db.exec(
                select(AuditLogEntry).order_by(AuditLogEntry.seq.desc()).limit(limit)  # type: ignore[union-attr]
            ).all()
        )

    @staticmethod
    def _latest(db: Session) -> AuditLogEntry | None:
        return db.exec(
            select(AuditLogEntry).order_by(AuditLogEntry.seq.desc()).limit(1)  # type: ignore[union-attr]
        ).first()


def _value(v: Any) -> str:
    return v.value if hasattr(v, "value") else str(v)

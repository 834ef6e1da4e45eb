"""Atomic store primitives shared by every service.

State shared between request handlers (referrals, invites, tokens, codes,
sessions) lives in one SQL store. Handlers may run in separate processes,
so every cross-step invariant is expressed as a conditional write against
that store: ``UPDATE ... WHERE <guard>`` followed by a row-count check.
A row count of zero means the guard no longer held, i.e. a concurrent
writer got there first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    SQLite (via SQLModel) strips timezone info on round-trip, so all
    stored timestamps are naive-UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def conditional_update(
    db: Session,
    model: type,
    guards: list[Any],
    values: dict[str, Any],
    *,
    commit: bool = True,
) -> bool:
    """Apply ``values`` to rows of ``model`` matching all ``guards``.

    Returns True if at least one row was written. With ``commit=False`` the
    caller owns the transaction and must commit or roll back.
    """
    stmt = update(model).where(*guards).values(**values)
    result = db.execute(stmt)  # type: ignore[call-overload]
    if commit:
        db.commit()
    return result.rowcount > 0


def read_with_retry(db: Session, fn: Callable[[], T]) -> T:
    """Run an idempotent read, retrying once on a transient store error.

    Writes must never go through here.
    """
    try:
        return fn()
    except OperationalError:
        logger.warning("Transient store error on read, retrying once", exc_info=True)
        db.rollback()
        return fn()

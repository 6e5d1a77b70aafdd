from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from fieldops.core.config import get_settings
from fieldops.lifecycle.derivation import as_utc
from fieldops.lifecycle.models import utcnow
from fieldops.metrics import observe_write_conflict


logger = logging.getLogger("fieldops.lifecycle.unit_of_work")

_CONTEXT_KEY = "fieldops.write_context"
# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_UNIQUE_VIOLATION = "23505"

T = TypeVar("T")


class WriteConflictError(Exception):
    """A write unit kept colliding with concurrent writers and was abandoned."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"write abandoned after {attempts} conflicting attempts")
        self.attempts = attempts


@dataclass(frozen=True, slots=True)
class WriteContext:
    now: datetime
    changed_by: str | None = None
    notes: str | None = None


def get_write_context(session: Session) -> WriteContext:
    context = session.info.get(_CONTEXT_KEY)
    if context is None:
        return WriteContext(now=utcnow())
    return context


@contextmanager
def bound_write_context(
    session: Session,
    *,
    now: datetime | None = None,
    changed_by: str | None = None,
    notes: str | None = None,
) -> Iterator[WriteContext]:
    """Pin the clock and actor that flushes inside the block stamp onto status changes."""
    context = WriteContext(now=as_utc(now) if now is not None else utcnow(), changed_by=changed_by, notes=notes)
    previous = session.info.get(_CONTEXT_KEY)
    session.info[_CONTEXT_KEY] = context
    try:
        yield context
    finally:
        if previous is None:
            session.info.pop(_CONTEXT_KEY, None)
        else:
            session.info[_CONTEXT_KEY] = previous


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return sqlstate in _RETRYABLE_SQLSTATES
    return False


def is_unique_violation(exc: BaseException) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == _UNIQUE_VIOLATION
    # sqlite reports no sqlstate
    return "UNIQUE constraint failed" in str(orig)


def run_in_transaction(
    session: Session,
    work: Callable[[Session], T],
    *,
    now: datetime | None = None,
    changed_by: str | None = None,
    notes: str | None = None,
    attempts: int | None = None,
    retry_unique: bool = False,
) -> T:
    """Run ``work`` and commit it as one unit.

    A concurrent modification detected at flush or commit rolls the whole unit
    back and runs ``work`` again from the start, so a cascade is never left
    half applied. ``work`` must therefore reload whatever rows it touches.

    With ``retry_unique`` a unique-key collision is treated the same way. Use it
    when ``work`` allocates a key that a concurrent writer may also have taken.
    """
    max_attempts = max(1, attempts if attempts is not None else get_settings().write_retry_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            with bound_write_context(session, now=now, changed_by=changed_by, notes=notes):
                result = work(session)
                session.commit()
            return result
        except (StaleDataError, DBAPIError) as exc:
            session.rollback()
            if not (is_retryable(exc) or (retry_unique and is_unique_violation(exc))):
                raise
            observe_write_conflict()
            logger.warning("write.conflict", extra={"attempt": attempt, "error": str(exc)[:500]})
            if attempt == max_attempts:
                raise WriteConflictError(max_attempts) from exc
        except Exception:
            session.rollback()
            raise
    raise WriteConflictError(max_attempts)

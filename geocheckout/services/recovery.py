"""Rebuild a session's countdown state from the database on resume.

Called whenever a client reconnects or the server restarts. The only inputs are
the attendance_sessions and pending_countdowns rows; whatever the client cached
locally is at most a display hint and never consulted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.errors import ApiError, StorageTransientError
from geocheckout.models import AttendanceSession, CloseReason, CloseType
from geocheckout.services.auto_checkout import try_execute
from geocheckout.services.clock import normalize_ts
from geocheckout.services.countdown import CountdownView, get_pending
from geocheckout.services.sessions import get_session

logger = logging.getLogger("geocheckout.recovery")


@dataclass(frozen=True, slots=True)
class SessionView:
    session_id: int
    tenant_id: int
    employee_id: int
    is_open: bool
    closed_at: datetime | None
    close_type: CloseType | None
    close_reason: CloseReason
    countdown: CountdownView | None


def _load(
    db: Session,
    session_id: int,
    *,
    tenant_id: int | None = None,
    employee_id: int | None = None,
) -> tuple[AttendanceSession, CountdownView | None]:
    session = get_session(db, session_id, fresh=True)
    # A session owned by someone else is reported exactly like a missing one.
    if (
        session is None
        or (tenant_id is not None and session.tenant_id != tenant_id)
        or (employee_id is not None and session.employee_id != employee_id)
    ):
        raise ApiError(status_code=404, code="SESSION_NOT_FOUND", message="Attendance session not found.")
    pending = get_pending(db, session_id)
    return session, CountdownView.from_row(pending) if pending is not None else None


def _view(session: AttendanceSession, countdown: CountdownView | None) -> SessionView:
    return SessionView(
        session_id=session.id,
        tenant_id=session.tenant_id,
        employee_id=session.employee_id,
        is_open=session.closed_at is None,
        closed_at=normalize_ts(session.closed_at) if session.closed_at is not None else None,
        close_type=session.close_type,
        close_reason=session.close_reason,
        countdown=countdown,
    )


def reconcile_on_resume(
    db: Session,
    session_id: int,
    *,
    tenant_id: int | None = None,
    employee_id: int | None = None,
    now_utc: datetime | None = None,
) -> SessionView:
    now_utc = normalize_ts(now_utc)
    try:
        session, countdown = _load(db, session_id, tenant_id=tenant_id, employee_id=employee_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("session_recovery_storage_error", extra={"session_id": session_id})
        raise StorageTransientError() from exc

    if countdown is not None and countdown.ends_at <= now_utc:
        # Overdue: settle it now so the caller never sees negative remaining time.
        outcome = try_execute(db, countdown.countdown_id, now_utc=now_utc)
        logger.info(
            "session_recovery_executed_overdue",
            extra={
                "session_id": session_id,
                "countdown_id": countdown.countdown_id,
                "outcome": outcome.value,
            },
        )
        try:
            session, countdown = _load(db, session_id)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageTransientError() from exc

    return _view(session, countdown)

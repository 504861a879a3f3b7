from __future__ import annotations

import enum
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.errors import ApiError, StorageTransientError
from geocheckout.models import (
    AttendanceSession,
    Branch,
    CancelReason,
    CloseReason,
    CloseType,
    Employee,
)
from geocheckout.services.clock import normalize_ts
from geocheckout.services.countdown import cancel_pending

logger = logging.getLogger("geocheckout.sessions")


class CloseResult(str, enum.Enum):
    OK = "OK"
    ALREADY_CLOSED = "ALREADY_CLOSED"


def get_session(db: Session, session_id: int, *, fresh: bool = False) -> AttendanceSession | None:
    return db.get(AttendanceSession, session_id, populate_existing=fresh)


def get_open_session(db: Session, employee_id: int) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession).where(
            AttendanceSession.employee_id == employee_id,
            AttendanceSession.closed_at.is_(None),
        )
    )


def _resolve_active_employee(db: Session, *, tenant_id: int, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None or employee.tenant_id != tenant_id:
        raise ApiError(
            status_code=404,
            code="EMPLOYEE_NOT_FOUND",
            message="Employee not found for this tenant.",
        )
    if not employee.is_active:
        raise ApiError(
            status_code=403,
            code="EMPLOYEE_INACTIVE",
            message="Inactive employee cannot perform attendance actions.",
        )
    return employee


def open_session(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    branch_id: int | None = None,
    now_utc: datetime | None = None,
) -> AttendanceSession:
    employee = _resolve_active_employee(db, tenant_id=tenant_id, employee_id=employee_id)
    resolved_branch_id = branch_id if branch_id is not None else employee.branch_id
    if resolved_branch_id is None:
        raise ApiError(
            status_code=409,
            code="BRANCH_REQUIRED",
            message="Employee has no branch assigned.",
        )
    branch = db.get(Branch, resolved_branch_id)
    if branch is None or branch.tenant_id != tenant_id or not branch.is_active:
        raise ApiError(status_code=404, code="BRANCH_NOT_FOUND", message="Branch not found.")

    if get_open_session(db, employee.id) is not None:
        raise ApiError(
            status_code=409,
            code="ALREADY_CHECKED_IN",
            message="An open attendance session already exists. Check out first.",
        )

    session = AttendanceSession(
        tenant_id=tenant_id,
        employee_id=employee.id,
        branch_id=branch.id,
        opened_at=normalize_ts(now_utc),
        closed_at=None,
        close_type=None,
        close_reason=CloseReason.NONE,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="ALREADY_CHECKED_IN",
            message="An open attendance session already exists. Check out first.",
        ) from exc
    db.refresh(session)
    logger.info(
        "session_opened",
        extra={"tenant_id": tenant_id, "employee_id": employee.id, "session_id": session.id},
    )
    return session


def close_session(
    db: Session,
    session_id: int,
    close_type: CloseType,
    close_reason: CloseReason,
    *,
    now_utc: datetime | None = None,
    commit: bool = True,
) -> CloseResult:
    """Close-if-open. Never touches a session whose closed_at is already set."""
    result = db.execute(
        update(AttendanceSession)
        .where(
            AttendanceSession.id == session_id,
            AttendanceSession.closed_at.is_(None),
        )
        .values(
            closed_at=normalize_ts(now_utc),
            close_type=close_type,
            close_reason=close_reason,
        )
    )
    if commit:
        db.commit()
    if result.rowcount == 0:
        return CloseResult.ALREADY_CLOSED
    return CloseResult.OK


def manual_checkout(
    db: Session,
    *,
    tenant_id: int,
    employee_id: int,
    session_id: int,
    now_utc: datetime | None = None,
) -> AttendanceSession:
    now_utc = normalize_ts(now_utc)
    session = get_session(db, session_id)
    if session is None or session.tenant_id != tenant_id or session.employee_id != employee_id:
        raise ApiError(status_code=404, code="SESSION_NOT_FOUND", message="Attendance session not found.")

    # Countdown row first, then the session row: the executor claims in the
    # same order, so the two paths cannot deadlock.
    try:
        cancel_pending(
            db,
            session_id=session_id,
            cancel_reason=CancelReason.MANUAL_CHECKOUT,
            now_utc=now_utc,
            commit=False,
        )
        outcome = close_session(
            db,
            session_id,
            CloseType.MANUAL,
            CloseReason.NONE,
            now_utc=now_utc,
            commit=False,
        )
        if outcome == CloseResult.ALREADY_CLOSED:
            db.rollback()
        else:
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("manual_checkout_storage_error", extra={"session_id": session_id})
        raise StorageTransientError() from exc

    if outcome == CloseResult.ALREADY_CLOSED:
        raise ApiError(
            status_code=409,
            code="ALREADY_CHECKED_OUT",
            message="Attendance session is already closed.",
        )

    logger.info(
        "session_closed_manual",
        extra={"tenant_id": tenant_id, "employee_id": employee_id, "session_id": session_id},
    )
    refreshed = get_session(db, session_id, fresh=True)
    if refreshed is None:
        raise ApiError(status_code=404, code="SESSION_NOT_FOUND", message="Attendance session not found.")
    return refreshed

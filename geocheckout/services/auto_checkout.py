"""Exactly-once execution of expired countdowns.

``try_execute`` is the only code path that writes ``close_type = AUTO``. The
claim (PENDING -> EXECUTED) and the session close are conditional updates in
one transaction, so any number of sweeps may race on the same countdown and at
most one of them closes the session. A session that was closed manually first
is never overwritten; its countdown is cancelled with MANUAL_RACE instead.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.audit import log_audit
from geocheckout.db import SessionLocal
from geocheckout.errors import ApiError, StorageTransientError
from geocheckout.models import (
    AttendanceSession,
    AuditActorType,
    CancelReason,
    Classification,
    CloseReason,
    CloseType,
    CountdownReason,
    CountdownStatus,
    LocationHeartbeat,
    PendingCountdown,
)
from geocheckout.services.clock import normalize_ts
from geocheckout.services.countdown import TransitionAction, cancel_countdown, start_countdown
from geocheckout.services.sessions import CloseResult, close_session
from geocheckout.services.tenant_config import TenantConfig, get_config
from geocheckout.settings import get_settings

logger = logging.getLogger("geocheckout.auto_checkout")

AUTO_CHECKOUT_ACTOR_ID = "auto_checkout"


class ExecuteOutcome(str, enum.Enum):
    EXECUTED = "EXECUTED"
    ALREADY_HANDLED = "ALREADY_HANDLED"
    STILL_PENDING = "STILL_PENDING"


@dataclass(slots=True)
class SweepResult:
    executed_count: int = 0
    already_handled_count: int = 0
    still_pending_count: int = 0
    error_count: int = 0
    silent_started_count: int = 0

    def record(self, outcome: ExecuteOutcome) -> None:
        if outcome == ExecuteOutcome.EXECUTED:
            self.executed_count += 1
        elif outcome == ExecuteOutcome.ALREADY_HANDLED:
            self.already_handled_count += 1
        elif outcome == ExecuteOutcome.STILL_PENDING:
            self.still_pending_count += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "executed_count": self.executed_count,
            "already_handled_count": self.already_handled_count,
            "still_pending_count": self.still_pending_count,
            "error_count": self.error_count,
            "silent_started_count": self.silent_started_count,
        }


def close_reason_for(reason: CountdownReason) -> CloseReason:
    if reason == CountdownReason.LOCATION_DISABLED:
        return CloseReason.LOCATION_DISABLED
    if reason == CountdownReason.OUT_OF_BRANCH:
        return CloseReason.OUT_OF_BRANCH
    raise ValueError(f"Unknown countdown reason: {reason!r}")


def _latest_heartbeat(db: Session, session_id: int) -> LocationHeartbeat | None:
    return db.scalar(
        select(LocationHeartbeat)
        .where(LocationHeartbeat.session_id == session_id)
        .order_by(LocationHeartbeat.server_received_at.desc(), LocationHeartbeat.id.desc())
        .limit(1)
    )


def recovered_before_exec(
    countdown: PendingCountdown,
    heartbeat: LocationHeartbeat | None,
    *,
    gate: timedelta,
) -> bool:
    if heartbeat is None or heartbeat.classification != Classification.OK:
        return False
    seen_at = normalize_ts(heartbeat.server_received_at)
    if seen_at <= normalize_ts(countdown.started_at):
        return False
    return seen_at >= normalize_ts(countdown.ends_at) - gate


def _execute_claimed(
    db: Session,
    *,
    countdown: PendingCountdown,
    now_utc: datetime,
) -> ExecuteOutcome:
    claim = db.execute(
        update(PendingCountdown)
        .where(
            PendingCountdown.id == countdown.id,
            PendingCountdown.status == CountdownStatus.PENDING,
        )
        .values(status=CountdownStatus.EXECUTED, executed_at=now_utc)
    )
    if claim.rowcount == 0:
        db.rollback()
        return ExecuteOutcome.ALREADY_HANDLED

    closed = close_session(
        db,
        countdown.session_id,
        CloseType.AUTO,
        close_reason_for(countdown.reason),
        now_utc=now_utc,
        commit=False,
    )
    if closed == CloseResult.ALREADY_CLOSED:
        db.execute(
            update(PendingCountdown)
            .where(PendingCountdown.id == countdown.id)
            .values(
                status=CountdownStatus.CANCELLED,
                cancel_reason=CancelReason.MANUAL_RACE,
                cancelled_at=now_utc,
                executed_at=None,
            )
        )
        db.commit()
        logger.info(
            "auto_checkout_manual_race",
            extra={"countdown_id": countdown.id, "session_id": countdown.session_id},
        )
        return ExecuteOutcome.ALREADY_HANDLED

    db.commit()
    return ExecuteOutcome.EXECUTED


def try_execute(
    db: Session,
    countdown_id: int,
    *,
    now_utc: datetime | None = None,
) -> ExecuteOutcome:
    now_utc = normalize_ts(now_utc)
    try:
        countdown = db.get(PendingCountdown, countdown_id, populate_existing=True)
        if countdown is None or countdown.status != CountdownStatus.PENDING:
            return ExecuteOutcome.ALREADY_HANDLED
        if normalize_ts(countdown.ends_at) > now_utc:
            return ExecuteOutcome.STILL_PENDING

        session = db.get(AttendanceSession, countdown.session_id, populate_existing=True)
        if session is None:
            cancel_countdown(
                db,
                countdown_id=countdown.id,
                cancel_reason=CancelReason.SESSION_MISSING,
                now_utc=now_utc,
            )
            return ExecuteOutcome.ALREADY_HANDLED

        config = get_config(db, countdown.tenant_id)
        if not config.enabled:
            cancel_countdown(
                db,
                countdown_id=countdown.id,
                cancel_reason=CancelReason.TENANT_DISABLED,
                now_utc=now_utc,
            )
            return ExecuteOutcome.ALREADY_HANDLED

        gate = timedelta(seconds=get_settings().auto_checkout_final_gate_seconds)
        if recovered_before_exec(countdown, _latest_heartbeat(db, countdown.session_id), gate=gate):
            cancel_countdown(
                db,
                countdown_id=countdown.id,
                cancel_reason=CancelReason.RECOVERED_BEFORE_EXEC,
                now_utc=now_utc,
            )
            return ExecuteOutcome.ALREADY_HANDLED

        outcome = _execute_claimed(db, countdown=countdown, now_utc=now_utc)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("auto_checkout_storage_error", extra={"countdown_id": countdown_id})
        raise StorageTransientError() from exc

    if outcome == ExecuteOutcome.EXECUTED:
        details: dict[str, Any] = {
            "countdown_id": countdown.id,
            "reason": countdown.reason.value,
            "started_at": normalize_ts(countdown.started_at).isoformat(),
            "ends_at": normalize_ts(countdown.ends_at).isoformat(),
        }
        logger.info(
            "auto_checkout_executed",
            extra={
                "tenant_id": countdown.tenant_id,
                "employee_id": countdown.employee_id,
                "session_id": countdown.session_id,
                **details,
            },
        )
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=AUTO_CHECKOUT_ACTOR_ID,
            action="AUTO_CHECKOUT_EXECUTED",
            success=True,
            entity_type="attendance_session",
            entity_id=str(countdown.session_id),
            details=details,
        )
    return outcome


def list_due_countdown_ids(
    db: Session,
    *,
    now_utc: datetime,
    limit: int,
    tenant_ids: Collection[int] | None = None,
) -> list[int]:
    stmt = select(PendingCountdown.id).where(
        PendingCountdown.status == CountdownStatus.PENDING,
        PendingCountdown.ends_at <= now_utc,
    )
    if tenant_ids is not None:
        stmt = stmt.where(PendingCountdown.tenant_id.in_(list(tenant_ids)))
    return list(
        db.scalars(stmt.order_by(PendingCountdown.ends_at.asc(), PendingCountdown.id.asc()).limit(limit)).all()
    )


def silence_threshold(config: TenantConfig) -> timedelta:
    multiple = max(1, get_settings().auto_checkout_silence_interval_multiple)
    return max(config.staleness_threshold, config.heartbeat_interval * multiple)


def list_silent_sessions(
    db: Session,
    *,
    now_utc: datetime,
    limit: int,
    tenant_ids: Collection[int] | None = None,
) -> list[tuple[AttendanceSession, TenantConfig, datetime]]:
    """Open sessions without a PENDING countdown whose last heartbeat (or
    check-in, when none arrived) is older than the tenant's silence threshold."""
    last_seen = (
        select(
            LocationHeartbeat.session_id,
            func.max(LocationHeartbeat.server_received_at).label("last_seen_at"),
        )
        .group_by(LocationHeartbeat.session_id)
        .subquery()
    )
    has_pending = (
        select(PendingCountdown.id)
        .where(
            PendingCountdown.session_id == AttendanceSession.id,
            PendingCountdown.status == CountdownStatus.PENDING,
        )
        .exists()
    )
    stmt = (
        select(AttendanceSession, last_seen.c.last_seen_at)
        .outerjoin(last_seen, last_seen.c.session_id == AttendanceSession.id)
        .where(AttendanceSession.closed_at.is_(None), ~has_pending)
    )
    if tenant_ids is not None:
        stmt = stmt.where(AttendanceSession.tenant_id.in_(list(tenant_ids)))

    configs: dict[int, TenantConfig] = {}
    silent: list[tuple[AttendanceSession, TenantConfig, datetime]] = []
    for session, last_seen_at in db.execute(stmt.order_by(AttendanceSession.id.asc())).all():
        if session.tenant_id not in configs:
            configs[session.tenant_id] = get_config(db, session.tenant_id)
        config = configs[session.tenant_id]
        if not config.enabled:
            continue
        seen_at = normalize_ts(last_seen_at if last_seen_at is not None else session.opened_at)
        if now_utc - seen_at < silence_threshold(config):
            continue
        silent.append((session, config, seen_at))
        if len(silent) >= limit:
            break
    return silent


def _start_silent_countdowns(
    db: Session,
    result: SweepResult,
    *,
    now_utc: datetime,
    limit: int,
    tenant_ids: Collection[int] | None,
) -> None:
    try:
        silent = list_silent_sessions(db, now_utc=now_utc, limit=limit, tenant_ids=tenant_ids)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("auto_checkout_silence_scan_failed")
        result.error_count += 1
        return

    for session, config, seen_at in silent:
        try:
            transition = start_countdown(
                db,
                session=session,
                reason=CountdownReason.LOCATION_DISABLED,
                config=config,
                now_utc=now_utc,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("auto_checkout_silence_start_failed", extra={"session_id": session.id})
            result.error_count += 1
            continue
        if transition.action == TransitionAction.CREATED:
            result.silent_started_count += 1
            logger.info(
                "countdown_started_for_silent_session",
                extra={
                    "tenant_id": session.tenant_id,
                    "session_id": session.id,
                    "last_seen_at": seen_at.isoformat(),
                },
            )


def run_expiry_sweep(
    db: Session | None = None,
    *,
    now_utc: datetime | None = None,
    limit: int | None = None,
    tenant_ids: Collection[int] | None = None,
) -> SweepResult:
    """Execute due countdowns, then start countdowns for silent sessions.

    ``tenant_ids`` restricts both passes; ``None`` covers every tenant.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return run_expiry_sweep(managed_db, now_utc=now_utc, limit=limit, tenant_ids=tenant_ids)

    now_utc = normalize_ts(now_utc)
    batch_size = limit if limit is not None else max(1, get_settings().auto_checkout_sweep_batch_size)
    result = SweepResult()

    try:
        due_ids = list_due_countdown_ids(db, now_utc=now_utc, limit=batch_size, tenant_ids=tenant_ids)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("auto_checkout_sweep_scan_failed")
        raise StorageTransientError() from exc

    for countdown_id in due_ids:
        try:
            outcome = try_execute(db, countdown_id, now_utc=now_utc)
        except ApiError:
            result.error_count += 1
            continue
        result.record(outcome)

    _start_silent_countdowns(db, result, now_utc=now_utc, limit=batch_size, tenant_ids=tenant_ids)

    if due_ids or result.silent_started_count:
        logger.info("auto_checkout_sweep_tick", extra={"due_count": len(due_ids), **result.to_dict()})
    return result

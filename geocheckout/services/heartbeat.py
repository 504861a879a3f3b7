from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.audit import log_audit
from geocheckout.errors import HeartbeatValidationError, StorageTransientError, TenantMismatchError
from geocheckout.models import (
    AttendanceSession,
    AuditActorType,
    CancelReason,
    Classification,
    LocationHeartbeat,
    PermissionState,
)
from geocheckout.services.branches import get_geofence
from geocheckout.services.clock import normalize_ts
from geocheckout.services.countdown import (
    CountdownState,
    CountdownTransition,
    CountdownView,
    TransitionAction,
    apply_classification,
    cancel_pending,
)
from geocheckout.services.geofence import Evaluation, GeoPoint, evaluate
from geocheckout.services.sessions import get_session
from geocheckout.services.tenant_config import get_config

logger = logging.getLogger("geocheckout.heartbeat")


class HeartbeatStatus(str, enum.Enum):
    OK = "OK"
    PENDING = "PENDING"
    SESSION_CLOSED = "SESSION_CLOSED"
    TENANT_MISMATCH = "TENANT_MISMATCH"


@dataclass(frozen=True, slots=True)
class Heartbeat:
    tenant_id: int
    employee_id: int
    session_id: int
    permission_state: PermissionState
    client_observed_at: datetime
    lat: float | None = None
    lon: float | None = None
    accuracy_m: float | None = None


@dataclass(frozen=True, slots=True)
class HeartbeatResult:
    status: HeartbeatStatus
    server_received_at: datetime
    classification: Classification | None = None
    countdown: CountdownView | None = None
    action: TransitionAction | None = None


def validate_heartbeat(heartbeat: Heartbeat) -> None:
    if (heartbeat.lat is None) != (heartbeat.lon is None):
        raise HeartbeatValidationError("lat and lon must be sent together.")
    if heartbeat.lat is not None and not -90.0 <= heartbeat.lat <= 90.0:
        raise HeartbeatValidationError("lat must be between -90 and 90.")
    if heartbeat.lon is not None and not -180.0 <= heartbeat.lon <= 180.0:
        raise HeartbeatValidationError("lon must be between -180 and 180.")
    if heartbeat.accuracy_m is not None and heartbeat.accuracy_m < 0:
        raise HeartbeatValidationError("accuracy_m cannot be negative.")
    if not isinstance(heartbeat.client_observed_at, datetime):
        raise HeartbeatValidationError("client_observed_at must be a timestamp.")
    if heartbeat.client_observed_at.tzinfo is None:
        raise HeartbeatValidationError("client_observed_at must carry a UTC offset.")


def sample_age(*, client_observed_at: datetime, server_received_at: datetime) -> timedelta:
    # Client clocks run ahead too; a future timestamp counts as a fresh sample.
    age = normalize_ts(server_received_at) - normalize_ts(client_observed_at)
    return max(timedelta(0), age)


def _resolve_session(db: Session, heartbeat: Heartbeat) -> AttendanceSession:
    session = get_session(db, heartbeat.session_id, fresh=True)
    if session is None:
        raise TenantMismatchError(
            reason="SESSION_NOT_FOUND",
            tenant_id=heartbeat.tenant_id,
            employee_id=heartbeat.employee_id,
            session_id=heartbeat.session_id,
        )
    if session.tenant_id != heartbeat.tenant_id or session.employee_id != heartbeat.employee_id:
        raise TenantMismatchError(
            reason="SESSION_OWNER_MISMATCH",
            tenant_id=heartbeat.tenant_id,
            employee_id=heartbeat.employee_id,
            session_id=heartbeat.session_id,
        )
    return session


def _record_heartbeat(
    db: Session,
    *,
    heartbeat: Heartbeat,
    evaluation: Evaluation,
    server_received_at: datetime,
) -> None:
    db.add(
        LocationHeartbeat(
            tenant_id=heartbeat.tenant_id,
            employee_id=heartbeat.employee_id,
            session_id=heartbeat.session_id,
            observed_at=normalize_ts(heartbeat.client_observed_at),
            server_received_at=server_received_at,
            latitude=heartbeat.lat,
            longitude=heartbeat.lon,
            accuracy_m=heartbeat.accuracy_m,
            permission_state=heartbeat.permission_state,
            gps_ok=evaluation.gps_ok,
            classification=evaluation.classification,
            distance_m=round(evaluation.distance_m, 2) if evaluation.distance_m is not None else None,
        )
    )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "heartbeat_audit_write_failed",
            extra={"session_id": heartbeat.session_id, "employee_id": heartbeat.employee_id},
        )


def _tenant_mismatch(
    db: Session,
    exc: TenantMismatchError,
    *,
    server_received_at: datetime,
    request_id: str | None,
) -> HeartbeatResult:
    logger.warning(
        "heartbeat_tenant_mismatch",
        extra={
            "request_id": request_id,
            "tenant_id": exc.tenant_id,
            "employee_id": exc.employee_id,
            "session_id": exc.session_id,
            "mismatch_reason": exc.reason,
        },
    )
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(exc.employee_id),
        action="HEARTBEAT_TENANT_MISMATCH",
        success=False,
        entity_type="attendance_session",
        entity_id=str(exc.session_id),
        details={"tenant_id": exc.tenant_id, "reason": exc.reason},
        request_id=request_id,
        ts_utc=server_received_at,
    )
    return HeartbeatResult(status=HeartbeatStatus.TENANT_MISMATCH, server_received_at=server_received_at)


def ingest(
    db: Session,
    heartbeat: Heartbeat,
    *,
    now_utc: datetime | None = None,
    request_id: str | None = None,
) -> HeartbeatResult:
    validate_heartbeat(heartbeat)
    server_received_at = normalize_ts(now_utc)

    try:
        try:
            session = _resolve_session(db, heartbeat)
        except TenantMismatchError as exc:
            return _tenant_mismatch(db, exc, server_received_at=server_received_at, request_id=request_id)

        if session.closed_at is not None:
            return HeartbeatResult(status=HeartbeatStatus.SESSION_CLOSED, server_received_at=server_received_at)

        config = get_config(db, session.tenant_id)
        geofence = get_geofence(db, session.branch_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("heartbeat_storage_error", extra={"session_id": heartbeat.session_id})
        raise StorageTransientError() from exc

    point = None
    if heartbeat.lat is not None and heartbeat.lon is not None:
        point = GeoPoint(lat=heartbeat.lat, lon=heartbeat.lon)
    evaluation = evaluate(
        point,
        heartbeat.accuracy_m,
        heartbeat.permission_state,
        sample_age(client_observed_at=heartbeat.client_observed_at, server_received_at=server_received_at),
        geofence,
        config.thresholds,
    )

    if config.enabled:
        transition = apply_classification(
            db,
            session=session,
            classification=evaluation.classification,
            config=config,
            now_utc=server_received_at,
        )
    else:
        try:
            cancel_pending(
                db,
                session_id=session.id,
                cancel_reason=CancelReason.TENANT_DISABLED,
                now_utc=server_received_at,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("heartbeat_storage_error", extra={"session_id": session.id})
            raise StorageTransientError() from exc
        transition = CountdownTransition(action=TransitionAction.NOOP, state=CountdownState.NONE)

    countdown_view = None
    if transition.state == CountdownState.PENDING and transition.countdown is not None:
        countdown_view = CountdownView.from_row(transition.countdown)

    _record_heartbeat(db, heartbeat=heartbeat, evaluation=evaluation, server_received_at=server_received_at)

    logger.info(
        "heartbeat_classified",
        extra={
            "request_id": request_id,
            "tenant_id": heartbeat.tenant_id,
            "employee_id": heartbeat.employee_id,
            "session_id": heartbeat.session_id,
            "classification": evaluation.classification.value,
            "distance_m": evaluation.distance_m,
            "unreliable_accuracy": evaluation.unreliable_accuracy,
            "auto_checkout_enabled": config.enabled,
            "transition": transition.action.value,
        },
    )

    if countdown_view is not None:
        return HeartbeatResult(
            status=HeartbeatStatus.PENDING,
            server_received_at=server_received_at,
            classification=evaluation.classification,
            countdown=countdown_view,
            action=transition.action,
        )
    return HeartbeatResult(
        status=HeartbeatStatus.OK,
        server_received_at=server_received_at,
        classification=evaluation.classification,
        action=transition.action,
    )

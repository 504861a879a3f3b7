from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from geocheckout.audit import log_audit
from geocheckout.db import get_db
from geocheckout.errors import StorageTransientError, error_response
from geocheckout.models import AuditActorType
from geocheckout.schemas import (
    AttendanceSessionRead,
    CheckinRequest,
    CheckoutRequest,
    CountdownRead,
    HeartbeatRequest,
    HeartbeatResponse,
    SessionStateResponse,
)
from geocheckout.services.clock import remaining_seconds, utcnow
from geocheckout.services.countdown import CountdownView
from geocheckout.services.heartbeat import Heartbeat, HeartbeatStatus, ingest
from geocheckout.services.recovery import reconcile_on_resume
from geocheckout.services.sessions import manual_checkout, open_session
from geocheckout.settings import get_settings

router = APIRouter(tags=["attendance"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _countdown_read(countdown: CountdownView | None, now_utc: datetime) -> CountdownRead | None:
    if countdown is None:
        return None
    return CountdownRead(
        reason=countdown.reason,
        ends_at=countdown.ends_at,
        remaining_seconds=remaining_seconds(countdown.ends_at, now_utc),
    )


def _storage_transient_response(request: Request, exc: StorageTransientError) -> JSONResponse:
    response = error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)
    response.headers["Retry-After"] = str(get_settings().storage_retry_after_seconds)
    return response


@router.post("/api/attendance/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: HeartbeatRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    request.state.actor = "employee"
    request.state.actor_id = str(payload.employee_id)
    request.state.employee_id = payload.employee_id
    request.state.tenant_id = payload.tenant_id
    request.state.session_id = payload.session_id
    location = payload.location
    try:
        result = ingest(
            db,
            Heartbeat(
                tenant_id=payload.tenant_id,
                employee_id=payload.employee_id,
                session_id=payload.session_id,
                permission_state=payload.permission_state,
                client_observed_at=payload.client_observed_at,
                lat=location.lat if location is not None else None,
                lon=location.lon if location is not None else None,
                accuracy_m=location.accuracy_m if location is not None else None,
            ),
            request_id=getattr(request.state, "request_id", None),
        )
    except StorageTransientError as exc:
        return _storage_transient_response(request, exc)

    request.state.heartbeat_status = result.status.value
    body = HeartbeatResponse(
        status=result.status.value,
        classification=result.classification,
        countdown=_countdown_read(result.countdown, result.server_received_at),
        server_time_utc=result.server_received_at,
    )
    if result.status == HeartbeatStatus.TENANT_MISMATCH:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=body.model_dump(mode="json"))
    return body


@router.get("/api/attendance/sessions/{session_id}/state", response_model=SessionStateResponse)
def session_state(
    session_id: int,
    request: Request,
    tenant_id: int = Query(ge=1),
    employee_id: int = Query(ge=1),
    db: Session = Depends(get_db),
):
    request.state.tenant_id = tenant_id
    now_utc = utcnow()
    try:
        view = reconcile_on_resume(
            db,
            session_id,
            tenant_id=tenant_id,
            employee_id=employee_id,
            now_utc=now_utc,
        )
    except StorageTransientError as exc:
        return _storage_transient_response(request, exc)

    request.state.employee_id = view.employee_id
    return SessionStateResponse(
        session_id=view.session_id,
        is_open=view.is_open,
        closed_at=view.closed_at,
        close_type=view.close_type,
        close_reason=view.close_reason,
        countdown=_countdown_read(view.countdown, now_utc),
        server_time_utc=now_utc,
    )


@router.post(
    "/api/attendance/checkin",
    response_model=AttendanceSessionRead,
    status_code=status.HTTP_201_CREATED,
)
def checkin(
    payload: CheckinRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    request.state.actor = "employee"
    request.state.actor_id = str(payload.employee_id)
    session = open_session(
        db,
        tenant_id=payload.tenant_id,
        employee_id=payload.employee_id,
        branch_id=payload.branch_id,
    )
    request.state.employee_id = session.employee_id
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(session.employee_id),
        action="ATTENDANCE_SESSION_OPENED",
        success=True,
        entity_type="attendance_session",
        entity_id=str(session.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={"tenant_id": session.tenant_id, "branch_id": session.branch_id},
        request_id=getattr(request.state, "request_id", None),
    )
    return AttendanceSessionRead.model_validate(session)


@router.post("/api/attendance/checkout", response_model=AttendanceSessionRead)
def checkout(
    payload: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceSessionRead:
    request.state.actor = "employee"
    request.state.actor_id = str(payload.employee_id)
    request.state.employee_id = payload.employee_id
    session = manual_checkout(
        db,
        tenant_id=payload.tenant_id,
        employee_id=payload.employee_id,
        session_id=payload.session_id,
    )
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(session.employee_id),
        action="ATTENDANCE_SESSION_CLOSED",
        success=True,
        entity_type="attendance_session",
        entity_id=str(session.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={"close_type": "MANUAL"},
        request_id=getattr(request.state, "request_id", None),
    )
    return AttendanceSessionRead.model_validate(session)

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from geocheckout.audit import log_audit
from geocheckout.db import get_db
from geocheckout.errors import ApiError
from geocheckout.models import AuditActorType, CountdownStatus, PendingCountdown
from geocheckout.schemas import (
    AdminAuthResponse,
    AdminLoginRequest,
    AutoCheckoutSettingsRead,
    AutoCheckoutSettingsUpdate,
    PendingCountdownRead,
    SweepResponse,
)
from geocheckout.security import (
    ensure_tenant_access,
    issue_admin_token,
    login_throttle,
    require_admin,
    scoped_tenant_ids,
    verify_admin_credentials,
)
from geocheckout.services.auto_checkout import run_expiry_sweep
from geocheckout.services.tenant_config import get_config, upsert_settings

router = APIRouter(tags=["admin"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


@router.post("/api/admin/auth/login", response_model=AdminAuthResponse)
def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AdminAuthResponse:
    username = payload.username.strip()
    ip = _client_ip(request)
    user_agent = _user_agent(request)
    request_id = getattr(request.state, "request_id", None)

    if ip:
        try:
            login_throttle.check(ip)
        except ApiError:
            log_audit(
                db,
                actor_type=AuditActorType.SYSTEM,
                actor_id="admin",
                action="ADMIN_LOGIN_FAIL",
                success=False,
                ip=ip,
                user_agent=user_agent,
                details={"reason": "TOO_MANY_ATTEMPTS"},
                request_id=request_id,
            )
            raise

    if not verify_admin_credentials(username, payload.password):
        if ip:
            login_throttle.record_failure(ip)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id=username or "admin",
            action="ADMIN_LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=user_agent,
            details={"reason": "INVALID_CREDENTIALS"},
            request_id=request_id,
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials.")

    if ip:
        login_throttle.reset(ip)
    token, expires_in, _claims = issue_admin_token(username)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=username,
        action="ADMIN_LOGIN_SUCCESS",
        success=True,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    return AdminAuthResponse(access_token=token, expires_in=expires_in)


@router.get(
    "/api/admin/tenants/{tenant_id}/auto-checkout-settings",
    response_model=AutoCheckoutSettingsRead,
)
def get_auto_checkout_settings(
    tenant_id: int,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin),
) -> AutoCheckoutSettingsRead:
    ensure_tenant_access(claims, tenant_id)
    return AutoCheckoutSettingsRead(**get_config(db, tenant_id).to_dict())


@router.put(
    "/api/admin/tenants/{tenant_id}/auto-checkout-settings",
    response_model=AutoCheckoutSettingsRead,
)
def put_auto_checkout_settings(
    tenant_id: int,
    payload: AutoCheckoutSettingsUpdate,
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin),
) -> AutoCheckoutSettingsRead:
    ensure_tenant_access(claims, tenant_id)
    config = upsert_settings(
        db,
        tenant_id=tenant_id,
        enabled=payload.enabled,
        countdown_seconds=payload.countdown_seconds,
        max_accuracy_m=payload.max_accuracy_m,
        staleness_seconds=payload.staleness_seconds,
        heartbeat_interval_seconds=payload.heartbeat_interval_seconds,
    )
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(claims.get("sub") or "admin"),
        action="AUTO_CHECKOUT_SETTINGS_UPDATED",
        success=True,
        entity_type="tenant",
        entity_id=str(tenant_id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details=config.to_dict(),
        request_id=getattr(request.state, "request_id", None),
    )
    return AutoCheckoutSettingsRead(**config.to_dict())


@router.get("/api/admin/auto-checkout/pending", response_model=list[PendingCountdownRead])
def list_pending_countdowns(
    tenant_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin),
) -> list[PendingCountdownRead]:
    stmt = select(PendingCountdown).where(PendingCountdown.status == CountdownStatus.PENDING)
    if tenant_id is not None:
        ensure_tenant_access(claims, tenant_id)
        stmt = stmt.where(PendingCountdown.tenant_id == tenant_id)
    elif (scope := scoped_tenant_ids(claims)) is not None:
        stmt = stmt.where(PendingCountdown.tenant_id.in_(scope))
    rows = db.scalars(stmt.order_by(PendingCountdown.ends_at.asc()).limit(limit)).all()
    return [PendingCountdownRead.model_validate(row) for row in rows]


@router.post("/api/admin/auto-checkout/sweep", response_model=SweepResponse)
def trigger_sweep(
    request: Request,
    db: Session = Depends(get_db),
    claims: dict[str, Any] = Depends(require_admin),
) -> SweepResponse:
    scope = scoped_tenant_ids(claims)
    result = run_expiry_sweep(db, tenant_ids=scope)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(claims.get("sub") or "admin"),
        action="AUTO_CHECKOUT_SWEEP_TRIGGERED",
        success=True,
        details={**result.to_dict(), "tenant_ids": scope},
        request_id=getattr(request.state, "request_id", None),
    )
    return SweepResponse(**result.to_dict())

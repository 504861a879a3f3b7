from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from geocheckout.models import (
    CancelReason,
    Classification,
    CloseReason,
    CloseType,
    CountdownReason,
    CountdownStatus,
    PermissionState,
)


class HeartbeatLocation(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class HeartbeatRequest(BaseModel):
    tenant_id: int = Field(ge=1)
    employee_id: int = Field(ge=1)
    session_id: int = Field(ge=1)
    location: HeartbeatLocation | None = None
    permission_state: PermissionState
    client_observed_at: datetime


class CountdownRead(BaseModel):
    reason: CountdownReason
    ends_at: datetime
    remaining_seconds: int


class HeartbeatResponse(BaseModel):
    status: Literal["OK", "PENDING", "SESSION_CLOSED", "TENANT_MISMATCH"]
    classification: Classification | None = None
    countdown: CountdownRead | None = None
    server_time_utc: datetime


class SessionStateResponse(BaseModel):
    session_id: int
    is_open: bool
    closed_at: datetime | None = None
    close_type: CloseType | None = None
    close_reason: CloseReason
    countdown: CountdownRead | None = None
    server_time_utc: datetime


class CheckinRequest(BaseModel):
    tenant_id: int = Field(ge=1)
    employee_id: int = Field(ge=1)
    branch_id: int | None = Field(default=None, ge=1)


class CheckoutRequest(BaseModel):
    tenant_id: int = Field(ge=1)
    employee_id: int = Field(ge=1)
    session_id: int = Field(ge=1)


class AttendanceSessionRead(BaseModel):
    id: int
    tenant_id: int
    employee_id: int
    branch_id: int
    opened_at: datetime
    closed_at: datetime | None = None
    close_type: CloseType | None = None
    close_reason: CloseReason

    model_config = ConfigDict(from_attributes=True)


class AdminLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class AdminAuthResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class AutoCheckoutSettingsUpdate(BaseModel):
    enabled: bool = True
    countdown_seconds: int = Field(default=900, ge=60, le=3600)
    max_accuracy_m: float = Field(default=80.0, gt=0)
    staleness_seconds: int = Field(default=60, ge=5)
    heartbeat_interval_seconds: int = Field(default=15, ge=5, le=60)


class AutoCheckoutSettingsRead(BaseModel):
    tenant_id: int
    enabled: bool
    countdown_seconds: int
    max_accuracy_m: float
    staleness_seconds: int
    heartbeat_interval_seconds: int
    source: Literal["default", "tenant"]


class PendingCountdownRead(BaseModel):
    id: int
    tenant_id: int
    employee_id: int
    session_id: int
    reason: CountdownReason
    status: CountdownStatus
    cancel_reason: CancelReason | None = None
    started_at: datetime
    ends_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SweepResponse(BaseModel):
    executed_count: int
    already_handled_count: int
    still_pending_count: int
    error_count: int
    silent_started_count: int = 0

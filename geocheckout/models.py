from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from geocheckout.db import Base

# JSONB on PostgreSQL, plain JSON on other engines (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class PermissionState(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class Classification(str, enum.Enum):
    OK = "OK"
    LOCATION_DISABLED = "LOCATION_DISABLED"
    OUT_OF_BRANCH = "OUT_OF_BRANCH"


class CountdownReason(str, enum.Enum):
    LOCATION_DISABLED = "LOCATION_DISABLED"
    OUT_OF_BRANCH = "OUT_OF_BRANCH"


class CountdownStatus(str, enum.Enum):
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    EXECUTED = "EXECUTED"


class CancelReason(str, enum.Enum):
    RECOVERED = "RECOVERED"
    MANUAL_RACE = "MANUAL_RACE"
    MANUAL_CHECKOUT = "MANUAL_CHECKOUT"
    RECOVERED_BEFORE_EXEC = "RECOVERED_BEFORE_EXEC"
    SESSION_MISSING = "SESSION_MISSING"
    TENANT_DISABLED = "TENANT_DISABLED"


class CloseType(str, enum.Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class CloseReason(str, enum.Enum):
    NONE = "NONE"
    LOCATION_DISABLED = "LOCATION_DISABLED"
    OUT_OF_BRANCH = "OUT_OF_BRANCH"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"
    EMPLOYEE = "EMPLOYEE"


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"),
        nullable=True,
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class AutoCheckoutSettings(Base):
    __tablename__ = "auto_checkout_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    countdown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=900, server_default=text("900"))
    max_accuracy_m: Mapped[float] = mapped_column(Float, nullable=False, default=80.0, server_default=text("80"))
    staleness_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60, server_default=text("60"))
    heartbeat_interval_seconds: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=15,
        server_default=text("15"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"
    __table_args__ = (
        Index(
            "uq_attendance_sessions_employee_open",
            "employee_id",
            unique=True,
            postgresql_where=text("closed_at IS NULL"),
            sqlite_where=text("closed_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_type: Mapped[CloseType | None] = mapped_column(
        Enum(CloseType, name="attendance_close_type"),
        nullable=True,
    )
    close_reason: Mapped[CloseReason] = mapped_column(
        Enum(CloseReason, name="attendance_close_reason"),
        nullable=False,
        default=CloseReason.NONE,
        server_default=text("'NONE'"),
    )

    countdowns: Mapped[list[PendingCountdown]] = relationship(back_populates="session")


class PendingCountdown(Base):
    __tablename__ = "pending_countdowns"
    __table_args__ = (
        Index(
            "uq_pending_countdowns_session_pending",
            "session_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_pending_countdowns_status_ends_at", "status", "ends_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    session_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[CountdownReason] = mapped_column(
        Enum(CountdownReason, name="countdown_reason"),
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[CountdownStatus] = mapped_column(
        Enum(CountdownStatus, name="countdown_status"),
        nullable=False,
        default=CountdownStatus.PENDING,
        server_default=text("'PENDING'"),
    )
    cancel_reason: Mapped[CancelReason | None] = mapped_column(
        Enum(CancelReason, name="countdown_cancel_reason"),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    session: Mapped[AttendanceSession] = relationship(back_populates="countdowns")


class LocationHeartbeat(Base):
    __tablename__ = "location_heartbeats"
    __table_args__ = (
        Index("ix_location_heartbeats_session_received", "session_id", "server_received_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    server_received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    permission_state: Mapped[PermissionState] = mapped_column(
        Enum(PermissionState, name="location_permission_state", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    gps_ok: Mapped[bool] = mapped_column(Boolean, nullable=False)
    classification: Mapped[Classification] = mapped_column(
        Enum(Classification, name="heartbeat_classification"),
        nullable=False,
    )
    distance_m: Mapped[float | None] = mapped_column(Float, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
    )

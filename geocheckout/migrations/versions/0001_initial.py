"""Initial auto checkout schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_close_type = postgresql.ENUM(
    "MANUAL",
    "AUTO",
    name="attendance_close_type",
    create_type=False,
)
attendance_close_reason = postgresql.ENUM(
    "NONE",
    "LOCATION_DISABLED",
    "OUT_OF_BRANCH",
    name="attendance_close_reason",
    create_type=False,
)
countdown_reason = postgresql.ENUM(
    "LOCATION_DISABLED",
    "OUT_OF_BRANCH",
    name="countdown_reason",
    create_type=False,
)
countdown_status = postgresql.ENUM(
    "PENDING",
    "CANCELLED",
    "EXECUTED",
    name="countdown_status",
    create_type=False,
)
countdown_cancel_reason = postgresql.ENUM(
    "RECOVERED",
    "MANUAL_RACE",
    "MANUAL_CHECKOUT",
    "RECOVERED_BEFORE_EXEC",
    "SESSION_MISSING",
    "TENANT_DISABLED",
    name="countdown_cancel_reason",
    create_type=False,
)
location_permission_state = postgresql.ENUM(
    "granted",
    "denied",
    "prompt",
    name="location_permission_state",
    create_type=False,
)
heartbeat_classification = postgresql.ENUM(
    "OK",
    "LOCATION_DISABLED",
    "OUT_OF_BRANCH",
    name="heartbeat_classification",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "SYSTEM",
    "EMPLOYEE",
    name="audit_actor_type",
    create_type=False,
)

_ENUMS = (
    attendance_close_type,
    attendance_close_reason,
    countdown_reason,
    countdown_status,
    countdown_cancel_reason,
    location_permission_state,
    heartbeat_classification,
    audit_actor_type,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("name", name="uq_tenants_name"),
    )

    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("center_lat", sa.Float(), nullable=False),
        sa.Column("center_lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Float(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_branches_tenant_id", "branches", ["tenant_id"], unique=False)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_employees_tenant_id", "employees", ["tenant_id"], unique=False)

    op.create_table(
        "auto_checkout_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("countdown_seconds", sa.Integer(), nullable=False, server_default=sa.text("900")),
        sa.Column("max_accuracy_m", sa.Float(), nullable=False, server_default=sa.text("80")),
        sa.Column("staleness_seconds", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("heartbeat_interval_seconds", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", name="uq_auto_checkout_settings_tenant_id"),
        sa.CheckConstraint(
            "countdown_seconds BETWEEN 60 AND 3600",
            name="ck_auto_checkout_settings_countdown_range",
        ),
        sa.CheckConstraint(
            "heartbeat_interval_seconds BETWEEN 5 AND 60",
            name="ck_auto_checkout_settings_interval_range",
        ),
    )

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_type", attendance_close_type, nullable=True),
        sa.Column(
            "close_reason",
            attendance_close_reason,
            nullable=False,
            server_default=sa.text("'NONE'"),
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_attendance_sessions_tenant_id", "attendance_sessions", ["tenant_id"], unique=False)
    op.create_index("ix_attendance_sessions_employee_id", "attendance_sessions", ["employee_id"], unique=False)
    op.create_index(
        "uq_attendance_sessions_employee_open",
        "attendance_sessions",
        ["employee_id"],
        unique=True,
        postgresql_where=sa.text("closed_at IS NULL"),
    )

    op.create_table(
        "pending_countdowns",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("reason", countdown_reason, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", countdown_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("cancel_reason", countdown_cancel_reason, nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
        sa.CheckConstraint("ends_at > started_at", name="ck_pending_countdowns_ends_after_start"),
    )
    op.create_index("ix_pending_countdowns_tenant_id", "pending_countdowns", ["tenant_id"], unique=False)
    op.create_index("ix_pending_countdowns_session_id", "pending_countdowns", ["session_id"], unique=False)
    op.create_index(
        "ix_pending_countdowns_status_ends_at",
        "pending_countdowns",
        ["status", "ends_at"],
        unique=False,
    )
    op.create_index(
        "uq_pending_countdowns_session_pending",
        "pending_countdowns",
        ["session_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "location_heartbeats",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("server_received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("permission_state", location_permission_state, nullable=False),
        sa.Column("gps_ok", sa.Boolean(), nullable=False),
        sa.Column("classification", heartbeat_classification, nullable=False),
        sa.Column("distance_m", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_location_heartbeats_session_received",
        "location_heartbeats",
        ["session_id", "server_received_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_location_heartbeats_session_received", table_name="location_heartbeats")
    op.drop_table("location_heartbeats")

    op.drop_index("uq_pending_countdowns_session_pending", table_name="pending_countdowns")
    op.drop_index("ix_pending_countdowns_status_ends_at", table_name="pending_countdowns")
    op.drop_index("ix_pending_countdowns_session_id", table_name="pending_countdowns")
    op.drop_index("ix_pending_countdowns_tenant_id", table_name="pending_countdowns")
    op.drop_table("pending_countdowns")

    op.drop_index("uq_attendance_sessions_employee_open", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_employee_id", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_tenant_id", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")

    op.drop_table("auto_checkout_settings")

    op.drop_index("ix_employees_tenant_id", table_name="employees")
    op.drop_table("employees")

    op.drop_index("ix_branches_tenant_id", table_name="branches")
    op.drop_table("branches")

    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)

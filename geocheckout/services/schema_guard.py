from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.reflection import Inspector
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "attendance_sessions": {"id", "tenant_id", "employee_id", "closed_at", "close_type", "close_reason"},
    "pending_countdowns": {"id", "session_id", "reason", "started_at", "ends_at", "status", "cancel_reason"},
    "auto_checkout_settings": {"tenant_id", "enabled", "countdown_seconds"},
    "alembic_version": {"version_num"},
}

# One pending countdown per session, one open session per employee.
REQUIRED_UNIQUE_INDEXES: dict[str, str] = {
    "pending_countdowns": "uq_pending_countdowns_session_pending",
    "attendance_sessions": "uq_attendance_sessions_employee_open",
}


def _column_issues(inspector: Inspector) -> list[str]:
    issues: list[str] = []
    for table, required in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table}:{type(exc).__name__}")
            continue
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table}:{','.join(missing)}")
    return issues


def _index_issues(inspector: Inspector, warnings: list[str]) -> list[str]:
    issues: list[str] = []
    for table, index_name in REQUIRED_UNIQUE_INDEXES.items():
        try:
            by_name = {index.get("name"): index for index in inspector.get_indexes(table) or []}
        except SQLAlchemyError as exc:
            warnings.append(f"INDEX_INSPECTION_FAILED:{table}:{type(exc).__name__}")
            continue
        index = by_name.get(index_name)
        if index is None:
            issues.append(f"MISSING_UNIQUE_INDEX:{table}:{index_name}")
        elif not index.get("unique"):
            issues.append(f"INDEX_NOT_UNIQUE:{table}:{index_name}")
    return issues


def _migration_issues(engine: Engine) -> list[str]:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        return [f"ALEMBIC_VERSION_CHECK_FAILED:{type(exc).__name__}"]
    if not str(version or "").strip():
        return ["ALEMBIC_VERSION_EMPTY"]
    return []


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Check that the tables, partial unique indexes and migration stamp the
    attendance engine depends on are present before serving traffic."""
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    warnings: list[str] = []
    issues = _column_issues(inspector) + _index_issues(inspector, warnings) + _migration_issues(engine)
    return SchemaGuardResult(ok=not issues, checked_at_utc=checked_at_utc, issues=issues, warnings=warnings)

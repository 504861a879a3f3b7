from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geocheckout.errors import ApiError
from geocheckout.models import AutoCheckoutSettings, Tenant
from geocheckout.services.clock import utcnow
from geocheckout.services.geofence import ClassifyThresholds
from geocheckout.settings import get_settings

COUNTDOWN_SECONDS_MIN = 60
COUNTDOWN_SECONDS_MAX = 3600
HEARTBEAT_INTERVAL_SECONDS_MIN = 5
HEARTBEAT_INTERVAL_SECONDS_MAX = 60


@dataclass(frozen=True, slots=True)
class TenantConfig:
    tenant_id: int
    enabled: bool
    countdown_duration: timedelta
    max_accuracy_m: float
    staleness_threshold: timedelta
    heartbeat_interval: timedelta
    source: str = "default"

    @property
    def thresholds(self) -> ClassifyThresholds:
        return ClassifyThresholds(
            max_accuracy_m=self.max_accuracy_m,
            staleness=self.staleness_threshold,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "enabled": self.enabled,
            "countdown_seconds": int(self.countdown_duration.total_seconds()),
            "max_accuracy_m": self.max_accuracy_m,
            "staleness_seconds": int(self.staleness_threshold.total_seconds()),
            "heartbeat_interval_seconds": int(self.heartbeat_interval.total_seconds()),
            "source": self.source,
        }


def default_config(tenant_id: int) -> TenantConfig:
    settings = get_settings()
    return TenantConfig(
        tenant_id=tenant_id,
        enabled=settings.auto_checkout_default_enabled,
        countdown_duration=timedelta(seconds=settings.auto_checkout_default_countdown_seconds),
        max_accuracy_m=float(settings.auto_checkout_default_max_accuracy_m),
        staleness_threshold=timedelta(seconds=settings.auto_checkout_default_staleness_seconds),
        heartbeat_interval=timedelta(seconds=settings.auto_checkout_default_heartbeat_interval_seconds),
    )


def _config_from_row(row: AutoCheckoutSettings) -> TenantConfig:
    return TenantConfig(
        tenant_id=row.tenant_id,
        enabled=row.enabled,
        countdown_duration=timedelta(seconds=row.countdown_seconds),
        max_accuracy_m=float(row.max_accuracy_m),
        staleness_threshold=timedelta(seconds=row.staleness_seconds),
        heartbeat_interval=timedelta(seconds=row.heartbeat_interval_seconds),
        source="tenant",
    )


def get_config(db: Session, tenant_id: int) -> TenantConfig:
    row = db.scalar(select(AutoCheckoutSettings).where(AutoCheckoutSettings.tenant_id == tenant_id))
    if row is None:
        return default_config(tenant_id)
    return _config_from_row(row)


def upsert_settings(
    db: Session,
    *,
    tenant_id: int,
    enabled: bool,
    countdown_seconds: int,
    max_accuracy_m: float,
    staleness_seconds: int,
    heartbeat_interval_seconds: int,
    now_utc: datetime | None = None,
) -> TenantConfig:
    if db.get(Tenant, tenant_id) is None:
        raise ApiError(status_code=404, code="TENANT_NOT_FOUND", message="Tenant not found.")
    if not COUNTDOWN_SECONDS_MIN <= countdown_seconds <= COUNTDOWN_SECONDS_MAX:
        raise ApiError(
            status_code=422,
            code="INVALID_COUNTDOWN_SECONDS",
            message=f"countdown_seconds must be between {COUNTDOWN_SECONDS_MIN} and {COUNTDOWN_SECONDS_MAX}.",
        )
    if not HEARTBEAT_INTERVAL_SECONDS_MIN <= heartbeat_interval_seconds <= HEARTBEAT_INTERVAL_SECONDS_MAX:
        raise ApiError(
            status_code=422,
            code="INVALID_HEARTBEAT_INTERVAL",
            message=(
                "heartbeat_interval_seconds must be between "
                f"{HEARTBEAT_INTERVAL_SECONDS_MIN} and {HEARTBEAT_INTERVAL_SECONDS_MAX}."
            ),
        )

    values = {
        "enabled": enabled,
        "countdown_seconds": countdown_seconds,
        "max_accuracy_m": max_accuracy_m,
        "staleness_seconds": staleness_seconds,
        "heartbeat_interval_seconds": heartbeat_interval_seconds,
        "updated_at": now_utc or utcnow(),
    }
    row = _settings_row(db, tenant_id)
    if row is None:
        row = AutoCheckoutSettings(tenant_id=tenant_id)
        db.add(row)
    _apply(row, values)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent first write created the row; update that one instead.
        db.rollback()
        row = _settings_row(db, tenant_id)
        if row is None:
            raise
        _apply(row, values)
        db.commit()
    db.refresh(row)
    return _config_from_row(row)


def _settings_row(db: Session, tenant_id: int) -> AutoCheckoutSettings | None:
    return db.scalar(
        select(AutoCheckoutSettings)
        .where(AutoCheckoutSettings.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )


def _apply(row: AutoCheckoutSettings, values: dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(row, key, value)

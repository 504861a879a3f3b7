from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from geocheckout.errors import ApiError
from geocheckout.models import AutoCheckoutSettings
from geocheckout.services import tenant_config
from geocheckout.services.tenant_config import get_config, upsert_settings
from geocheckout.settings import get_settings
from tests.sqlite_support import T0, SQLiteTestCase


class TenantConfigTests(SQLiteTestCase):
    def _upsert(self, **overrides):  # type: ignore[no-untyped-def]
        values = {
            "tenant_id": self.tenant_id,
            "enabled": True,
            "countdown_seconds": 600,
            "max_accuracy_m": 40.0,
            "staleness_seconds": 30,
            "heartbeat_interval_seconds": 10,
            "now_utc": T0,
        }
        values.update(overrides)
        return upsert_settings(self.db, **values)

    def test_missing_row_uses_settings_defaults(self) -> None:
        config = get_config(self.db, self.tenant_id)
        settings = get_settings()

        self.assertEqual(config.source, "default")
        self.assertEqual(config.enabled, settings.auto_checkout_default_enabled)
        self.assertEqual(
            config.countdown_duration,
            timedelta(seconds=settings.auto_checkout_default_countdown_seconds),
        )

    def test_upsert_creates_then_updates_row(self) -> None:
        created = self._upsert()
        self.assertEqual(created.source, "tenant")
        self.assertEqual(created.countdown_duration, timedelta(seconds=600))
        self.assertEqual(created.thresholds.max_accuracy_m, 40.0)
        self.assertEqual(created.thresholds.staleness, timedelta(seconds=30))

        updated = self._upsert(enabled=False, countdown_seconds=1200)
        self.assertFalse(updated.enabled)

        reloaded = get_config(self.db, self.tenant_id)
        self.assertFalse(reloaded.enabled)
        self.assertEqual(reloaded.to_dict()["countdown_seconds"], 1200)

    def test_countdown_outside_allowed_range_is_rejected(self) -> None:
        for value in (59, 3601):
            with self.assertRaises(ApiError) as exc:
                self._upsert(countdown_seconds=value)
            self.assertEqual(exc.exception.code, "INVALID_COUNTDOWN_SECONDS")

    def test_heartbeat_interval_outside_allowed_range_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            self._upsert(heartbeat_interval_seconds=120)
        self.assertEqual(exc.exception.code, "INVALID_HEARTBEAT_INTERVAL")

    def test_unknown_tenant_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            self._upsert(tenant_id=9999)
        self.assertEqual(exc.exception.status_code, 404)

    def test_concurrent_first_write_updates_the_winning_row(self) -> None:
        # Another request inserts the row after this one looked and found none.
        self.set_tenant_settings(enabled=True, countdown_seconds=900)
        real_lookup = tenant_config._settings_row
        lookups: list[int] = []

        def _lookup(db, tenant_id):  # type: ignore[no-untyped-def]
            lookups.append(tenant_id)
            return None if len(lookups) == 1 else real_lookup(db, tenant_id)

        with self.new_db() as db, patch("geocheckout.services.tenant_config._settings_row", side_effect=_lookup):
            config = upsert_settings(
                db,
                tenant_id=self.tenant_id,
                enabled=False,
                countdown_seconds=300,
                max_accuracy_m=40.0,
                staleness_seconds=30,
                heartbeat_interval_seconds=10,
                now_utc=T0,
            )

        self.assertEqual(len(lookups), 2)
        self.assertFalse(config.enabled)
        self.assertEqual(config.countdown_duration, timedelta(seconds=300))
        with self.new_db() as db:
            rows = list(db.scalars(select(AutoCheckoutSettings)).all())
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].countdown_seconds, 300)


if __name__ == "__main__":
    unittest.main()

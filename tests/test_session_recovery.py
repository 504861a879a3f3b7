from __future__ import annotations

import unittest
from datetime import timedelta

from geocheckout.errors import ApiError
from geocheckout.models import CloseReason, CloseType, CountdownReason, CountdownStatus
from geocheckout.services.recovery import reconcile_on_resume
from tests.sqlite_support import T0, SQLiteTestCase


class SessionRecoveryTests(SQLiteTestCase):
    def test_open_session_without_countdown(self) -> None:
        view = reconcile_on_resume(self.db, self.session_id, now_utc=T0)

        self.assertTrue(view.is_open)
        self.assertIsNone(view.countdown)
        self.assertIsNone(view.close_type)
        self.assertEqual(view.close_reason, CloseReason.NONE)

    def test_running_countdown_is_returned_verbatim(self) -> None:
        countdown_id = self.add_countdown(started_at=T0, reason=CountdownReason.LOCATION_DISABLED)

        view = reconcile_on_resume(self.db, self.session_id, now_utc=T0 + timedelta(minutes=4))

        self.assertTrue(view.is_open)
        self.assertIsNotNone(view.countdown)
        assert view.countdown is not None
        self.assertEqual(view.countdown.countdown_id, countdown_id)
        self.assertEqual(view.countdown.reason, CountdownReason.LOCATION_DISABLED)
        self.assertEqual(view.countdown.started_at, T0)
        self.assertEqual(view.countdown.ends_at, T0 + timedelta(minutes=15))

    def test_repeated_resume_returns_identical_state(self) -> None:
        self.add_countdown(started_at=T0)

        first = reconcile_on_resume(self.db, self.session_id, now_utc=T0 + timedelta(minutes=1))
        second = reconcile_on_resume(self.db, self.session_id, now_utc=T0 + timedelta(minutes=1))

        self.assertEqual(first, second)

    def test_resume_from_a_fresh_database_session_matches(self) -> None:
        self.add_countdown(started_at=T0)

        first = reconcile_on_resume(self.db, self.session_id, now_utc=T0 + timedelta(minutes=1))
        with self.new_db() as other_db:
            second = reconcile_on_resume(other_db, self.session_id, now_utc=T0 + timedelta(minutes=2))

        self.assertEqual(first, second)

    def test_overdue_countdown_is_executed_before_returning(self) -> None:
        # Countdown ended five seconds before the client came back.
        now = T0 + timedelta(minutes=15, seconds=5)
        self.add_countdown(started_at=T0, reason=CountdownReason.OUT_OF_BRANCH)

        view = reconcile_on_resume(self.db, self.session_id, now_utc=now)

        self.assertFalse(view.is_open)
        self.assertEqual(view.close_type, CloseType.AUTO)
        self.assertEqual(view.close_reason, CloseReason.OUT_OF_BRANCH)
        self.assertEqual(view.closed_at, now)
        self.assertIsNone(view.countdown)
        [countdown] = self.fetch_countdowns()
        self.assertEqual(countdown.status, CountdownStatus.EXECUTED)

        again = reconcile_on_resume(self.db, self.session_id, now_utc=now)
        self.assertEqual(view, again)

    def test_overdue_countdown_of_disabled_tenant_is_cancelled(self) -> None:
        self.set_tenant_settings(enabled=False)
        self.add_countdown(started_at=T0)

        view = reconcile_on_resume(self.db, self.session_id, now_utc=T0 + timedelta(minutes=20))

        self.assertTrue(view.is_open)
        self.assertIsNone(view.countdown)

    def test_unknown_session_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as exc:
            reconcile_on_resume(self.db, 9999, now_utc=T0)
        self.assertEqual(exc.exception.status_code, 404)
        self.assertEqual(exc.exception.code, "SESSION_NOT_FOUND")

    def test_foreign_owner_is_not_found_and_overdue_countdown_survives(self) -> None:
        self.add_countdown(started_at=T0)

        with self.assertRaises(ApiError) as exc:
            reconcile_on_resume(
                self.db,
                self.session_id,
                tenant_id=self.tenant_id,
                employee_id=self.employee_id + 1,
                now_utc=T0 + timedelta(minutes=20),
            )

        self.assertEqual(exc.exception.code, "SESSION_NOT_FOUND")
        self.assertIsNone(self.fetch_session().closed_at)
        [countdown] = self.fetch_countdowns()
        self.assertEqual(countdown.status, CountdownStatus.PENDING)


if __name__ == "__main__":
    unittest.main()

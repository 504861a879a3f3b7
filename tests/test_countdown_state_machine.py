from __future__ import annotations

import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from geocheckout.errors import StorageTransientError
from geocheckout.models import (
    AttendanceSession,
    CancelReason,
    Classification,
    CountdownReason,
    CountdownStatus,
)
from geocheckout.services.clock import normalize_ts
from geocheckout.services.countdown import (
    CountdownState,
    TransitionAction,
    apply_classification,
    violation_reason,
)
from tests.sqlite_support import T0, SQLiteTestCase, make_config


class _BrokenDB:
    def __init__(self) -> None:
        self.rollback_calls = 0

    def _fail(self, *_args, **_kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    execute = _fail
    scalar = _fail

    def rollback(self) -> None:
        self.rollback_calls += 1


class ViolationReasonTests(unittest.TestCase):
    def test_maps_every_classification(self) -> None:
        self.assertIsNone(violation_reason(Classification.OK))
        self.assertEqual(violation_reason(Classification.LOCATION_DISABLED), CountdownReason.LOCATION_DISABLED)
        self.assertEqual(violation_reason(Classification.OUT_OF_BRANCH), CountdownReason.OUT_OF_BRANCH)


class CountdownStateMachineTests(SQLiteTestCase):
    def _apply(self, classification: Classification, at, *, db=None, countdown_seconds: int = 900):  # type: ignore[no-untyped-def]
        db = self.db if db is None else db
        session = db.get(AttendanceSession, self.session_id)
        return apply_classification(
            db,
            session=session,
            classification=classification,
            config=make_config(self.tenant_id, countdown_seconds=countdown_seconds),
            now_utc=at,
        )

    def test_ok_without_countdown_is_noop(self) -> None:
        transition = self._apply(Classification.OK, T0)
        self.assertEqual(transition.action, TransitionAction.NOOP)
        self.assertEqual(transition.state, CountdownState.NONE)
        self.assertEqual(self.fetch_countdowns(), [])

    def test_violation_creates_pending_with_full_duration(self) -> None:
        transition = self._apply(Classification.OUT_OF_BRANCH, T0)

        self.assertEqual(transition.action, TransitionAction.CREATED)
        self.assertEqual(transition.state, CountdownState.PENDING)
        rows = self.fetch_countdowns()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].status, CountdownStatus.PENDING)
        self.assertEqual(rows[0].reason, CountdownReason.OUT_OF_BRANCH)
        self.assertEqual(normalize_ts(rows[0].ends_at), T0 + timedelta(seconds=900))

    def test_repeated_violation_keeps_the_running_countdown(self) -> None:
        first = self._apply(Classification.OUT_OF_BRANCH, T0)
        second = self._apply(Classification.OUT_OF_BRANCH, T0 + timedelta(seconds=30))

        self.assertEqual(second.action, TransitionAction.KEPT)
        self.assertEqual(second.countdown.id, first.countdown.id)  # type: ignore[union-attr]
        self.assertEqual(normalize_ts(second.countdown.ends_at), T0 + timedelta(seconds=900))  # type: ignore[union-attr]

    def test_reason_change_does_not_extend_deadline(self) -> None:
        self._apply(Classification.OUT_OF_BRANCH, T0)
        transition = self._apply(Classification.LOCATION_DISABLED, T0 + timedelta(seconds=120))

        self.assertEqual(transition.action, TransitionAction.KEPT)
        rows = self.fetch_countdowns()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].reason, CountdownReason.OUT_OF_BRANCH)
        self.assertEqual(normalize_ts(rows[0].ends_at), T0 + timedelta(seconds=900))

    def test_recovery_cancels_pending(self) -> None:
        self._apply(Classification.LOCATION_DISABLED, T0)
        transition = self._apply(Classification.OK, T0 + timedelta(seconds=60))

        self.assertEqual(transition.action, TransitionAction.CANCELLED)
        self.assertEqual(transition.state, CountdownState.NONE)
        rows = self.fetch_countdowns()
        self.assertEqual(rows[0].status, CountdownStatus.CANCELLED)
        self.assertEqual(rows[0].cancel_reason, CancelReason.RECOVERED)
        self.assertEqual(normalize_ts(rows[0].cancelled_at), T0 + timedelta(seconds=60))  # type: ignore[arg-type]

    def test_cancel_then_violation_restarts_with_full_duration(self) -> None:
        # Violation at t=0, recovery at t=300, violation again at t=310.
        self._apply(Classification.OUT_OF_BRANCH, T0)
        self._apply(Classification.OK, T0 + timedelta(seconds=300))
        transition = self._apply(Classification.OUT_OF_BRANCH, T0 + timedelta(seconds=310))

        self.assertEqual(transition.action, TransitionAction.CREATED)
        rows = self.fetch_countdowns()
        self.assertEqual([row.status for row in rows], [CountdownStatus.CANCELLED, CountdownStatus.PENDING])
        self.assertEqual(normalize_ts(rows[1].ends_at), T0 + timedelta(seconds=310 + 900))

    def test_restart_ignores_time_left_on_cancelled_countdown(self) -> None:
        # 200 s left when the employee recovers; the next violation gets the full 900 s.
        self._apply(Classification.OUT_OF_BRANCH, T0)
        recovered_at = T0 + timedelta(seconds=700)
        self._apply(Classification.OK, recovered_at)
        violated_at = recovered_at + timedelta(seconds=5)
        self._apply(Classification.OUT_OF_BRANCH, violated_at)

        pending = [row for row in self.fetch_countdowns() if row.status == CountdownStatus.PENDING]
        self.assertEqual(len(pending), 1)
        self.assertEqual(normalize_ts(pending[0].ends_at), violated_at + timedelta(seconds=900))

    def test_concurrent_violations_leave_exactly_one_pending(self) -> None:
        workers = 8
        barrier = threading.Barrier(workers)

        def _worker(index: int):  # type: ignore[no-untyped-def]
            with self.new_db() as db:
                barrier.wait()
                transition = self._apply(
                    Classification.OUT_OF_BRANCH,
                    T0 + timedelta(milliseconds=index),
                    db=db,
                )
                return transition.action, transition.countdown.id if transition.countdown else None

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(_worker, range(workers)))

        self.assertEqual(self.pending_count(), 1)
        actions = [action for action, _ in results]
        self.assertEqual(actions.count(TransitionAction.CREATED), 1)
        self.assertTrue(all(action in {TransitionAction.CREATED, TransitionAction.KEPT, TransitionAction.ADOPTED} for action in actions))
        countdown_ids = {countdown_id for _, countdown_id in results}
        self.assertEqual(len(countdown_ids), 1)

    def test_storage_failure_raises_transient_error_and_rolls_back(self) -> None:
        broken = _BrokenDB()
        session = AttendanceSession(id=1, tenant_id=1, employee_id=1, branch_id=1, opened_at=T0)

        for classification in (Classification.OK, Classification.OUT_OF_BRANCH):
            with self.assertRaises(StorageTransientError) as exc:
                apply_classification(
                    broken,  # type: ignore[arg-type]
                    session=session,
                    classification=classification,
                    config=make_config(1),
                    now_utc=T0,
                )
            self.assertEqual(exc.exception.status_code, 503)
            self.assertEqual(exc.exception.code, "STORAGE_TRANSIENT")
        self.assertEqual(broken.rollback_calls, 2)


if __name__ == "__main__":
    unittest.main()

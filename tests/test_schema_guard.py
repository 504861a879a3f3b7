from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import text

from geocheckout.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema
from tests.sqlite_support import SQLiteTestCase


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], indexes_by_table: dict[str, list[dict[str, object]]]):
        self._columns_by_table = columns_by_table
        self._indexes_by_table = indexes_by_table

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return self._indexes_by_table.get(table_name, [])


class SchemaGuardTests(unittest.TestCase):
    def test_reports_missing_columns_and_indexes(self) -> None:
        columns = {table: set(required) for table, required in REQUIRED_TABLE_COLUMNS.items()}
        columns["pending_countdowns"] = {"id", "session_id", "status"}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            indexes_by_table={
                "attendance_sessions": [
                    {"name": "uq_attendance_sessions_employee_open", "unique": False},
                ],
            },
        )

        with patch("geocheckout.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:pending_countdowns:") for item in result.issues))
        self.assertIn(
            "MISSING_UNIQUE_INDEX:pending_countdowns:uq_pending_countdowns_session_pending",
            result.issues,
        )
        self.assertIn(
            "INDEX_NOT_UNIQUE:attendance_sessions:uq_attendance_sessions_employee_open",
            result.issues,
        )
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)
        self.assertEqual(result.to_dict()["issue_count"], len(result.issues))


class SchemaGuardSQLiteTests(SQLiteTestCase):
    def test_schema_created_from_models_passes(self) -> None:
        with self.engine.begin() as connection:
            connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
            connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))

        result = verify_runtime_schema(self.engine)

        self.assertTrue(result.ok, result.issues)
        self.assertEqual(result.issues, [])

    def test_missing_alembic_table_fails(self) -> None:
        result = verify_runtime_schema(self.engine)

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("TABLE_UNREADABLE:alembic_version") or item.startswith("MISSING_COLUMNS:alembic_version") for item in result.issues))


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from geocheckout.errors import ApiError
from geocheckout.security import (
    LoginThrottle,
    decode_admin_token,
    ensure_tenant_access,
    hash_password,
    issue_admin_token,
    scoped_tenant_ids,
    verify_admin_credentials,
    verify_password,
)
from geocheckout.settings import get_settings, get_sweep_interval_seconds


class SecurityFeatureTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_access_token_roundtrip(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "jwt-test-secret"}, clear=False):
            get_settings.cache_clear()
            token, expires_in, claims = issue_admin_token("ops")
            payload = decode_admin_token(token)

        self.assertEqual(payload["sub"], "ops")
        self.assertEqual(payload["jti"], claims["jti"])
        self.assertEqual(expires_in, get_settings().access_token_minutes * 60)

    def test_token_signed_with_other_secret_is_rejected(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "jwt-old-secret"}, clear=False):
            get_settings.cache_clear()
            token, _expires_in, _claims = issue_admin_token("ops")

        with patch.dict(os.environ, {"JWT_SECRET": "jwt-new-secret"}, clear=False):
            get_settings.cache_clear()
            with self.assertRaises(ApiError) as exc:
                decode_admin_token(token)
        self.assertEqual(exc.exception.status_code, 401)

    def test_admin_credentials_accept_quoted_env_values(self) -> None:
        password_hash = hash_password("StrongPass123!")
        with patch.dict(
            os.environ,
            {"ADMIN_USER": '"ops"', "ADMIN_PASS_HASH": f"'{password_hash}'"},
            clear=False,
        ):
            get_settings.cache_clear()
            self.assertTrue(verify_admin_credentials("ops", "StrongPass123!"))
            self.assertFalse(verify_admin_credentials("ops", "nope"))
            self.assertFalse(verify_admin_credentials("other", "StrongPass123!"))

    def test_verify_password_tolerates_garbage_hash(self) -> None:
        self.assertFalse(verify_password("secret", "not-a-bcrypt-hash"))

    def test_login_throttle_blocks_after_repeated_failures(self) -> None:
        throttle = LoginThrottle(max_attempts=3, window=timedelta(minutes=10))
        ip = "203.0.113.7"
        for _ in range(3):
            throttle.check(ip)
            throttle.record_failure(ip)

        with self.assertRaises(ApiError) as exc:
            throttle.check(ip)
        self.assertEqual(exc.exception.status_code, 429)
        throttle.check("198.51.100.1")

        throttle.reset(ip)
        throttle.check(ip)

    def test_login_throttle_forgets_failures_outside_window(self) -> None:
        throttle = LoginThrottle(max_attempts=2, window=timedelta(minutes=10))
        start = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
        throttle.record_failure("203.0.113.7", now=start)
        throttle.record_failure("203.0.113.7", now=start + timedelta(minutes=1))

        with self.assertRaises(ApiError):
            throttle.check("203.0.113.7", now=start + timedelta(minutes=5))
        throttle.check("203.0.113.7", now=start + timedelta(minutes=12))

    def test_token_carries_configured_tenant_scope(self) -> None:
        with patch.dict(
            os.environ,
            {"JWT_SECRET": "jwt-test-secret", "ADMIN_TENANT_SCOPE": "3, 7"},
            clear=False,
        ):
            get_settings.cache_clear()
            token, _expires_in, _claims = issue_admin_token("ops")
            claims = decode_admin_token(token)

        self.assertEqual(claims["tenants"], ["3", "7"])
        ensure_tenant_access(claims, 7)
        with self.assertRaises(ApiError) as exc:
            ensure_tenant_access(claims, 4)
        self.assertEqual(exc.exception.status_code, 403)
        self.assertEqual(exc.exception.code, "TENANT_FORBIDDEN")

    def test_unscoped_claims_reach_every_tenant(self) -> None:
        ensure_tenant_access({"sub": "ops", "tenants": ["*"]}, 42)
        ensure_tenant_access({"sub": "ops"}, 42)

    def test_scoped_tenant_ids_for_sweep_filters(self) -> None:
        self.assertEqual(scoped_tenant_ids({"sub": "ops", "tenants": ["3", "7"]}), [3, 7])
        self.assertIsNone(scoped_tenant_ids({"sub": "ops", "tenants": ["*"]}))
        self.assertIsNone(scoped_tenant_ids({"sub": "ops"}))

    def test_sweep_interval_is_clamped(self) -> None:
        with patch.dict(os.environ, {"AUTO_CHECKOUT_SWEEP_INTERVAL_SECONDS": "0"}, clear=False):
            get_settings.cache_clear()
            self.assertEqual(get_sweep_interval_seconds(), 1)
        with patch.dict(os.environ, {"AUTO_CHECKOUT_SWEEP_INTERVAL_SECONDS": "600"}, clear=False):
            get_settings.cache_clear()
            self.assertEqual(get_sweep_interval_seconds(), 60)


if __name__ == "__main__":
    unittest.main()

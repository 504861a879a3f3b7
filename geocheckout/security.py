from __future__ import annotations

import hmac
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from geocheckout.errors import ApiError
from geocheckout.settings import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

ALL_TENANTS = "*"


class LoginThrottle:
    """Sliding-window count of failed admin logins per client IP."""

    def __init__(self, *, max_attempts: int, window: timedelta) -> None:
        self.max_attempts = max_attempts
        self.window = window
        self._lock = threading.Lock()
        self._failures: dict[str, deque[datetime]] = {}

    def _prune(self, ip: str, now: datetime) -> deque[datetime]:
        failures = self._failures.get(ip)
        if failures is None:
            return deque()
        while failures and failures[0] < now - self.window:
            failures.popleft()
        if not failures:
            del self._failures[ip]
        return failures

    def check(self, ip: str, *, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if len(self._prune(ip, now)) >= self.max_attempts:
                raise ApiError(
                    status_code=429,
                    code="TOO_MANY_ATTEMPTS",
                    message="Too many failed login attempts. Please try again later.",
                )

    def record_failure(self, ip: str, *, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            self._prune(ip, now)
            self._failures.setdefault(ip, deque()).append(now)

    def reset(self, ip: str | None = None) -> None:
        with self._lock:
            if ip is None:
                self._failures.clear()
            else:
                self._failures.pop(ip, None)


login_throttle = LoginThrottle(
    max_attempts=get_settings().admin_login_max_attempts,
    window=timedelta(minutes=get_settings().admin_login_window_minutes),
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def _strip_quotes(value: str) -> str:
    # Quoted env values are a common deployment copy/paste mistake.
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def verify_admin_credentials(username: str, password: str) -> bool:
    settings = get_settings()
    expected_username = _strip_quotes((settings.admin_user or "").strip())
    expected_hash = _strip_quotes((settings.admin_pass_hash or "").strip())
    if not expected_hash:
        return False
    if not hmac.compare_digest(username.encode("utf-8"), expected_username.encode("utf-8")):
        return False
    return verify_password(password, expected_hash)


def admin_tenant_scope() -> list[str]:
    raw = get_settings().admin_tenant_scope
    scope = [item.strip() for item in raw.split(",") if item.strip()]
    return scope or [ALL_TENANTS]


def issue_admin_token(username: str) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime_seconds = settings.access_token_minutes * 60
    claims: dict[str, Any] = {
        "sub": username,
        "role": "admin",
        "tenants": admin_tenant_scope(),
        "typ": "access",
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=lifetime_seconds)).timestamp()),
        "jti": uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256"), lifetime_seconds, claims


def decode_admin_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if claims.get("typ") != "access" or claims.get("role") != "admin":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is not an admin access token.")
    return claims


def scoped_tenant_ids(claims: dict[str, Any]) -> list[int] | None:
    """Tenant ids a scoped token may act on, or None for an unscoped token."""
    tenants = [str(item) for item in claims.get("tenants") or [ALL_TENANTS]]
    if ALL_TENANTS in tenants:
        return None
    return [int(item) for item in tenants if item.isdigit()]


def ensure_tenant_access(claims: dict[str, Any], tenant_id: int) -> None:
    tenants = [str(item) for item in claims.get("tenants") or [ALL_TENANTS]]
    if ALL_TENANTS in tenants or str(tenant_id) in tenants:
        return
    raise ApiError(status_code=403, code="TENANT_FORBIDDEN", message="Token is not scoped to this tenant.")


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    claims = decode_admin_token(credentials.credentials)
    request.state.actor = "admin"
    request.state.actor_id = str(claims.get("sub") or "admin")
    return claims

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class HeartbeatValidationError(ApiError):
    def __init__(self, message: str):
        super().__init__(status_code=422, code="INVALID_HEARTBEAT", message=message)


class StorageTransientError(ApiError):
    """Retryable storage failure. Nothing was written; the caller resends."""

    def __init__(self, message: str = "Storage temporarily unavailable. Retry the request."):
        super().__init__(status_code=503, code="STORAGE_TRANSIENT", message=message)


class TenantMismatchError(Exception):
    def __init__(
        self,
        *,
        reason: str,
        tenant_id: int,
        employee_id: int,
        session_id: int,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tenant_id = tenant_id
        self.employee_id = employee_id
        self.session_id = session_id


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)

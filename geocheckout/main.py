import asyncio
from contextlib import suppress
from datetime import datetime, timezone
from http import HTTPStatus
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from geocheckout.db import engine
from geocheckout.errors import ApiError, StorageTransientError, error_response
from geocheckout.logging_utils import setup_json_logging
from geocheckout.routers import admin, attendance
from geocheckout.services.auto_checkout import run_expiry_sweep
from geocheckout.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from geocheckout.settings import get_cors_origins, get_settings, get_sweep_interval_seconds

setup_json_logging()
logger = logging.getLogger("geocheckout.request")
sweep_worker_logger = logging.getLogger("geocheckout.sweep_worker")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid4().hex
    request.state.request_id = request_id
    request.state.actor = "anonymous"
    request.state.actor_id = None

    started = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code if response is not None else 500,
                "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                "actor": request.state.actor,
                "actor_id": request.state.actor_id,
                "tenant_id": getattr(request.state, "tenant_id", None),
                "employee_id": getattr(request.state, "employee_id", None),
                "session_id": getattr(request.state, "session_id", None),
                "heartbeat_status": getattr(request.state, "heartbeat_status", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    response = error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)
    if isinstance(exc, StorageTransientError):
        response.headers["Retry-After"] = str(settings.storage_retry_after_seconds)
    return response


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    try:
        code = HTTPStatus(exc.status_code).phrase.upper().replace(" ", "_")
    except ValueError:
        code = "HTTP_ERROR"
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail or "Request failed."),
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return error_response(request, status_code=422, code="VALIDATION_ERROR", message="; ".join(problems))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "method": request.method,
            "path": request.url.path,
        },
    )
    return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Unexpected server error.")


app.include_router(attendance.router)
app.include_router(admin.router)


async def _sweep_worker_loop(stop_event: asyncio.Event) -> None:
    """Run the expiry sweep every interval until ``stop_event`` is set.

    A failed tick is logged and retried on the next interval.
    """
    interval_seconds = get_sweep_interval_seconds()
    while not stop_event.is_set():
        now_utc = datetime.now(timezone.utc)
        try:
            result = await asyncio.to_thread(run_expiry_sweep, now_utc=now_utc)
        except Exception:
            sweep_worker_logger.exception("auto_checkout_sweep_tick_failed")
        else:
            app.state.last_sweep = {"ran_at_utc": now_utc.isoformat(), **result.to_dict()}

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        sweep_worker_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    sweep_worker_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError("Runtime schema guard failed: " + "; ".join(result.issues))


@app.on_event("startup")
async def start_sweep_worker() -> None:
    if not settings.auto_checkout_sweep_enabled or getattr(app.state, "sweep_worker_task", None) is not None:
        return

    app.state.sweep_worker_stop_event = asyncio.Event()
    app.state.sweep_worker_task = asyncio.create_task(_sweep_worker_loop(app.state.sweep_worker_stop_event))
    sweep_worker_logger.info(
        "auto_checkout_sweep_worker_started",
        extra={"interval_seconds": get_sweep_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_sweep_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "sweep_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "sweep_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        with suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(task, timeout=get_sweep_interval_seconds() + 5)
    app.state.sweep_worker_stop_event = None
    app.state.sweep_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    guard: SchemaGuardResult | None = getattr(app.state, "schema_guard_result", None)
    return {
        "status": "ok",
        "schema_guard": guard.to_dict() if guard is not None else {"ok": False, "issues": ["SCHEMA_GUARD_NOT_RUN"]},
        "sweep_worker": {
            "enabled": settings.auto_checkout_sweep_enabled,
            "running": getattr(app.state, "sweep_worker_task", None) is not None,
            "interval_seconds": get_sweep_interval_seconds(),
            "last_sweep": getattr(app.state, "last_sweep", None),
        },
    }

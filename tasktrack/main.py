from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tasktrack.api.responses import error_body
from tasktrack.api.routers import auth, directory, notifications, realtime, routine_tasks, tasks
from tasktrack.domain.errors import ErrorCode, TaskTrackError
from tasktrack.infra.audit import AuditMiddleware
from tasktrack.infra.db import check_db_ready
from tasktrack.infra.events import event_bus, log_event
from tasktrack.infra.logging import RequestIdMiddleware, setup_logging
from tasktrack.infra.rate_limit import check_redis_ready

setup_logging()
logger = structlog.get_logger(__name__)
event_bus.subscribe("*", log_event)

app = FastAPI(
    title="tasktrack",
    description="Multi-tenant task management: departments, tasks, activity trails and live notifications.",
    version="0.1.0",
)

# Outermost last: request ids are bound before the audit row is written.
app.add_middleware(AuditMiddleware)
app.add_middleware(RequestIdMiddleware)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(routine_tasks.router, prefix="/api/routine-tasks", tags=["routine-tasks"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(directory.departments_router, prefix="/api/departments", tags=["departments"])
app.include_router(directory.users_router, prefix="/api/users", tags=["users"])
app.include_router(realtime.ws_router, tags=["realtime"])


@app.exception_handler(TaskTrackError)
async def handle_domain_error(request: Request, exc: TaskTrackError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", code=str(exc.code), error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.detail))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error["loc"] if part != "body") for error in exc.errors()]
    return JSONResponse(
        status_code=400,
        content=error_body(ErrorCode.VALIDATION_ERROR, "Invalid request data", {"fields": fields}),
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content=error_body(ErrorCode.ROUTE_NOT_FOUND, f"Route {request.method} {request.url.path} not found"),
        )
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(status_code=exc.status_code, content=error_body(ErrorCode.HTTP_ERROR, detail))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_ERROR, "Internal server error"),
    )


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz", response_model=None)
def readyz() -> dict[str, object] | JSONResponse:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

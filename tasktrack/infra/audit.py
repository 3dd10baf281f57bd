from __future__ import annotations

from typing import Any

import structlog
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from tasktrack.domain.models import AuditLog, now_utc
from tasktrack.infra.db import engine

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAUDITED_PATHS = {"/healthz", "/readyz"}
SYSTEM_COMPANY = "system"

logger = structlog.get_logger(__name__)


def write_audit_log(
    *,
    company_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        company_id=company_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


class AuditMiddleware(BaseHTTPMiddleware):
    """Writes one audit row per mutating request once the response is known."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in UNAUDITED_PATHS or method not in WRITE_METHODS:
            return response

        principal = getattr(request.state, "principal", None)
        company_id = principal.company_id if principal is not None else SYSTEM_COMPANY
        actor_id = principal.user_id if principal is not None else None
        route = request.scope.get("route")
        route_path = getattr(route, "path", path)
        detail: dict[str, Any] = {
            "when": now_utc().isoformat(),
            "where": {
                "path": path,
                "route": route_path,
                "client_ip": request.client.host if request.client is not None else None,
                "request_id": getattr(request.state, "request_id", None),
            },
            "result": {
                "status_code": response.status_code,
                "outcome": _status_outcome(response.status_code),
            },
        }

        try:
            write_audit_log(
                company_id=company_id,
                actor_id=actor_id,
                action=f"{method}:{route_path}",
                resource=path,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception as exc:
            logger.warning("audit_write_failed", path=path, error=str(exc))
        return response

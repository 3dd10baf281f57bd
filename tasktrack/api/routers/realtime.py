from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from tasktrack.api.deps import ACCESS_COOKIE
from tasktrack.domain.errors import ErrorCode, TaskTrackError
from tasktrack.domain.permissions import is_leader
from tasktrack.infra.realtime import get_realtime_hub, leaders_room
from tasktrack.services.identity_service import IdentityService

ws_router = APIRouter()

TENANT_GATE_CODES = {
    ErrorCode.TENANT_DEACTIVATED,
    ErrorCode.SUBSCRIPTION_INACTIVE,
    ErrorCode.DEPARTMENT_DEACTIVATED,
}

logger = structlog.get_logger(__name__)


def _extract_ws_token(websocket: WebSocket, token: str | None) -> str | None:
    if token:
        return token
    cookie_token = websocket.cookies.get(ACCESS_COOKIE)
    if cookie_token:
        return cookie_token
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return None


@ws_router.websocket("/ws/notifications")
async def ws_notifications(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    try:
        principal = await run_in_threadpool(
            IdentityService().authenticate_access_token,
            _extract_ws_token(websocket, token),
        )
    except TaskTrackError as exc:
        await websocket.close(code=4403 if exc.code in TENANT_GATE_CODES else 4401)
        return

    rooms: set[str] = set()
    if is_leader(principal):
        rooms = {leaders_room(principal.department_id), *(leaders_room(dept) for dept in principal.managed_department_ids)}

    hub = get_realtime_hub()
    await hub.connect(principal.user_id, websocket, rooms)
    logger.info("ws_connected", user_id=principal.user_id, rooms=sorted(rooms))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("ws_disconnected", user_id=principal.user_id)
    finally:
        hub.disconnect(principal.user_id, websocket)

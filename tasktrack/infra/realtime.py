from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger(__name__)


class PushTarget(StrEnum):
    DIRECT = "direct"
    ROOM = "room"


def leaders_room(department_id: str) -> str:
    return f"department:{department_id}:leaders"


@dataclass(frozen=True)
class PushMessage:
    target: PushTarget
    address: str
    event: str
    payload: dict[str, Any]
    exclude_user_ids: frozenset[str] = field(default_factory=frozenset)
    # Room pushes only reach these members when set.
    recipient_ids: frozenset[str] | None = None


class RealtimeHub:
    """Live websocket sessions, addressable per user and per room."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    async def connect(self, user_id: str, websocket: WebSocket, rooms: Iterable[str] = ()) -> None:
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        for room in rooms:
            self._rooms.setdefault(room, set()).add(user_id)
            self._memberships.setdefault(user_id, set()).add(room)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        user_conns = self._connections.get(user_id, set())
        user_conns.discard(websocket)
        if user_conns:
            return
        self._connections.pop(user_id, None)
        for room in self._memberships.pop(user_id, set()):
            members = self._rooms.get(room, set())
            members.discard(user_id)
            if not members:
                self._rooms.pop(room, None)

    def is_connected(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, set()))

    async def send_to_user(self, user_id: str, event: str, payload: dict[str, Any]) -> int:
        delivered = 0
        for connection in list(self._connections.get(user_id, set())):
            try:
                await connection.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception as exc:
                logger.warning("push_delivery_failed", user_id=user_id, push_event=event, error=str(exc))
                self.disconnect(user_id, connection)
        return delivered

    async def broadcast_room(
        self,
        room: str,
        event: str,
        payload: dict[str, Any],
        exclude_user_ids: Iterable[str] = (),
        recipient_ids: Iterable[str] | None = None,
    ) -> int:
        members = self.room_members(room) - set(exclude_user_ids)
        if recipient_ids is not None:
            members &= set(recipient_ids)
        delivered = 0
        for user_id in members:
            delivered += await self.send_to_user(user_id, event, payload)
        return delivered

    async def deliver(self, messages: Iterable[PushMessage]) -> None:
        # Best effort: the notifications are already committed, so a failed
        # push only means the client picks them up on its next read.
        for message in messages:
            try:
                if message.target == PushTarget.ROOM:
                    await self.broadcast_room(
                        message.address,
                        message.event,
                        message.payload,
                        message.exclude_user_ids,
                        message.recipient_ids,
                    )
                else:
                    await self.send_to_user(message.address, message.event, message.payload)
            except Exception as exc:
                logger.warning(
                    "push_dispatch_failed",
                    target=str(message.target),
                    address=message.address,
                    push_event=message.event,
                    error=str(exc),
                )


@lru_cache(maxsize=1)
def get_realtime_hub() -> RealtimeHub:
    return RealtimeHub()

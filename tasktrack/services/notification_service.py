from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import func
from sqlmodel import Session, col, select

from tasktrack.domain.errors import ErrorCode, NotFoundError
from tasktrack.domain.models import (
    Notification,
    NotificationRead,
    NotificationType,
    Principal,
    Task,
    now_utc,
)
from tasktrack.infra.db import get_engine
from tasktrack.infra.realtime import PushMessage, PushTarget, leaders_room
from tasktrack.infra.unit_of_work import UnitOfWork


@dataclass(frozen=True)
class NotificationDraft:
    user_id: str
    type: NotificationType
    message: str
    # Leaders are reached through the department room rather than one by one.
    broadcast: bool = False


class NotificationDispatcher:
    """Stages notification rows inside the caller's transaction and prepares
    the pushes to send once that transaction has committed."""

    def stage(
        self,
        session: Session,
        task: Task,
        drafts: Iterable[NotificationDraft],
        *,
        event: str,
        actor_id: str,
    ) -> list[PushMessage]:
        seen: set[str] = set()
        direct: list[Notification] = []
        broadcast: list[Notification] = []
        for draft in drafts:
            if draft.user_id in seen:
                continue
            seen.add(draft.user_id)
            row = Notification(
                user_id=draft.user_id,
                company_id=task.company_id,
                department_id=task.department_id,
                task_id=task.id,
                type=draft.type,
                message=draft.message,
            )
            session.add(row)
            (broadcast if draft.broadcast else direct).append(row)

        messages = [
            PushMessage(
                target=PushTarget.DIRECT,
                address=row.user_id,
                event=event,
                payload=NotificationRead.model_validate(row).model_dump(mode="json"),
            )
            for row in direct
        ]
        if broadcast:
            first = broadcast[0]
            messages.append(
                PushMessage(
                    target=PushTarget.ROOM,
                    address=leaders_room(task.department_id),
                    event=event,
                    payload={
                        "task_id": task.id,
                        "department_id": task.department_id,
                        "type": str(first.type),
                        "message": first.message,
                        "recipient_ids": sorted(row.user_id for row in broadcast),
                    },
                    exclude_user_ids=frozenset({actor_id, *(row.user_id for row in direct)}),
                    recipient_ids=frozenset(row.user_id for row in broadcast),
                )
            )
        return messages


class NotificationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_notifications(
        self,
        principal: Principal,
        *,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Notification], int]:
        with self._session() as session:
            statement = select(Notification).where(Notification.user_id == principal.user_id)
            if unread_only:
                statement = statement.where(col(Notification.is_read).is_(False))
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            rows = session.exec(
                statement.order_by(col(Notification.created_at).desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return list(rows), int(total)

    def mark_read(self, principal: Principal, notification_id: str) -> NotificationRead:
        with UnitOfWork() as uow:
            row = uow.session.get(Notification, notification_id)
            if row is None or row.user_id != principal.user_id:
                raise NotFoundError(ErrorCode.NOTIFICATION_NOT_FOUND, "Notification not found")
            if not row.is_read:
                row.is_read = True
                row.read_at = now_utc()
                uow.session.add(row)
                uow.commit()
            return NotificationRead.model_validate(row)

    def mark_all_read(self, principal: Principal) -> int:
        with UnitOfWork() as uow:
            rows = uow.session.exec(
                select(Notification)
                .where(Notification.user_id == principal.user_id)
                .where(col(Notification.is_read).is_(False))
            ).all()
            stamp = now_utc()
            for row in rows:
                row.is_read = True
                row.read_at = stamp
                uow.session.add(row)
            uow.commit()
            return len(rows)

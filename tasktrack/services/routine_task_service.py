from __future__ import annotations

from sqlalchemy import func
from sqlmodel import Session, col, select

from tasktrack.domain.errors import ErrorCode, NotFoundError, PermissionDeniedError
from tasktrack.domain.models import (
    Principal,
    Role,
    RoutineTask,
    RoutineTaskCreate,
    RoutineTaskUpdate,
    now_utc,
)
from tasktrack.domain.permissions import can_access_department
from tasktrack.domain.task_rules import routine_progress
from tasktrack.infra.db import get_engine
from tasktrack.infra.events import event_bus
from tasktrack.infra.unit_of_work import UnitOfWork
from tasktrack.services.access_service import AccessService


class RoutineTaskService:
    def __init__(self) -> None:
        self._access = AccessService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _load(self, session: Session, principal: Principal, routine_id: str) -> RoutineTask:
        row = session.get(RoutineTask, routine_id)
        if row is None or row.company_id != principal.company_id:
            raise NotFoundError(ErrorCode.ROUTINE_TASK_NOT_FOUND, "Routine task not found")
        if principal.role == Role.USER:
            if row.performed_by != principal.user_id:
                raise PermissionDeniedError(ErrorCode.FORBIDDEN, "You do not have permission to access this routine task")
        elif not can_access_department(principal, row.department_id):
            raise PermissionDeniedError(ErrorCode.DEPARTMENT_ACCESS_DENIED, "Access denied to this department")
        return row

    def create_routine_task(self, principal: Principal, payload: RoutineTaskCreate) -> RoutineTask:
        items = [item.model_dump() for item in payload.performed_tasks]
        with UnitOfWork() as uow:
            row = RoutineTask(
                company_id=principal.company_id,
                department_id=principal.department_id,
                performed_by=principal.user_id,
                date=payload.date or now_utc(),
                performed_tasks=items,
                progress=routine_progress(items),
                attachments=[item.model_dump(mode="json") for item in payload.attachments],
            )
            uow.session.add(row)
            event = event_bus.build(
                "routine_task.created",
                principal.company_id,
                {"routine_task_id": row.id, "progress": row.progress},
                actor_id=principal.user_id,
            )
            event_bus.record(event, uow.session)
            uow.commit()
        event_bus.notify(event)
        return row

    def list_routine_tasks(
        self,
        principal: Principal,
        *,
        department_id: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[RoutineTask], int]:
        department = self._access.authorize_department(principal, department_id)
        statement = (
            select(RoutineTask)
            .where(RoutineTask.company_id == principal.company_id)
            .where(RoutineTask.department_id == department.id)
        )
        if principal.role == Role.USER:
            statement = statement.where(RoutineTask.performed_by == principal.user_id)
        with self._session() as session:
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            rows = session.exec(
                statement.order_by(col(RoutineTask.date).desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            return list(rows), int(total)

    def get_routine_task(self, principal: Principal, routine_id: str) -> RoutineTask:
        with self._session() as session:
            return self._load(session, principal, routine_id)

    def update_routine_task(self, principal: Principal, routine_id: str, payload: RoutineTaskUpdate) -> RoutineTask:
        with UnitOfWork() as uow:
            row = self._load(uow.session, principal, routine_id)
            if payload.date is not None:
                row.date = payload.date
            if payload.performed_tasks is not None:
                items = [item.model_dump() for item in payload.performed_tasks]
                row.performed_tasks = items
                row.progress = routine_progress(items)
            if payload.attachments is not None:
                row.attachments = [item.model_dump(mode="json") for item in payload.attachments]
            row.updated_at = now_utc()
            uow.session.add(row)
            uow.commit()
        return row

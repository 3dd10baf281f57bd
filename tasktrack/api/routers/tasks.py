from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from tasktrack.api.deps import CurrentPrincipal, require_roles
from tasktrack.api.responses import Envelope, PageEnvelope, ok, paged
from tasktrack.domain.models import (
    LEADER_ROLES,
    ActivityCreate,
    TaskActivityRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from tasktrack.domain.state_machine import TaskStatus
from tasktrack.infra.realtime import PushMessage, get_realtime_hub
from tasktrack.services.task_service import TaskService

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService()


Service = Annotated[TaskService, Depends(get_task_service)]


def _schedule_pushes(background_tasks: BackgroundTasks, pushes: list[PushMessage]) -> None:
    if pushes:
        background_tasks.add_task(get_realtime_hub().deliver, pushes)


@router.post(
    "",
    response_model=Envelope[TaskRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(*LEADER_ROLES))],
)
def create_task(
    payload: TaskCreate,
    principal: CurrentPrincipal,
    service: Service,
    background_tasks: BackgroundTasks,
) -> dict[str, object]:
    task, pushes = service.create_task(principal, payload)
    _schedule_pushes(background_tasks, pushes)
    return ok(f"{task.task_type} created successfully", task)


@router.get("", response_model=PageEnvelope[TaskRead])
def list_tasks(
    principal: CurrentPrincipal,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    task_type: Annotated[str | None, Query(alias="taskType")] = None,
    department_id: Annotated[str | None, Query(alias="departmentId")] = None,
) -> dict[str, object]:
    rows, total = service.list_tasks(
        principal,
        department_id=department_id,
        status=status_filter,
        task_type=task_type,
        page=page,
        limit=limit,
    )
    return paged("Tasks retrieved successfully", rows, page=page, limit=limit, total=total)


@router.get("/{task_id}", response_model=Envelope[TaskRead])
def get_task(task_id: str, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    return ok("Task retrieved successfully", service.get_task(principal, task_id))


@router.put(
    "/{task_id}",
    response_model=Envelope[TaskRead],
    dependencies=[Depends(require_roles(*LEADER_ROLES))],
)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    principal: CurrentPrincipal,
    service: Service,
    background_tasks: BackgroundTasks,
) -> dict[str, object]:
    task, pushes = service.update_task(principal, task_id, payload)
    _schedule_pushes(background_tasks, pushes)
    return ok("Task updated successfully", task)


@router.post(
    "/{task_id}/activities",
    response_model=Envelope[TaskActivityRead],
    status_code=status.HTTP_201_CREATED,
)
def log_activity(
    task_id: str,
    payload: ActivityCreate,
    principal: CurrentPrincipal,
    service: Service,
    background_tasks: BackgroundTasks,
) -> dict[str, object]:
    activity, _, pushes = service.log_activity(principal, task_id, payload)
    _schedule_pushes(background_tasks, pushes)
    if activity is None:
        return ok("Task is already in progress; nothing recorded")
    return ok("Activity logged successfully", activity)


@router.get("/{task_id}/activities", response_model=Envelope[list[TaskActivityRead]])
def list_activities(task_id: str, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    rows = service.list_activities(principal, task_id)
    return ok("Activities retrieved successfully", [TaskActivityRead.model_validate(row) for row in rows])

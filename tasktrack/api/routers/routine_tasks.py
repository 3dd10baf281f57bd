from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from tasktrack.api.deps import CurrentPrincipal
from tasktrack.api.responses import Envelope, PageEnvelope, ok, paged
from tasktrack.domain.models import RoutineTaskCreate, RoutineTaskRead, RoutineTaskUpdate
from tasktrack.services.routine_task_service import RoutineTaskService

router = APIRouter()


def get_routine_task_service() -> RoutineTaskService:
    return RoutineTaskService()


Service = Annotated[RoutineTaskService, Depends(get_routine_task_service)]


@router.post("", response_model=Envelope[RoutineTaskRead], status_code=status.HTTP_201_CREATED)
def create_routine_task(payload: RoutineTaskCreate, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    row = service.create_routine_task(principal, payload)
    return ok("Routine task created successfully", RoutineTaskRead.model_validate(row))


@router.get("", response_model=PageEnvelope[RoutineTaskRead])
def list_routine_tasks(
    principal: CurrentPrincipal,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    department_id: Annotated[str | None, Query(alias="departmentId")] = None,
) -> dict[str, object]:
    rows, total = service.list_routine_tasks(principal, department_id=department_id, page=page, limit=limit)
    return paged(
        "Routine tasks retrieved successfully",
        [RoutineTaskRead.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
    )


@router.get("/{routine_id}", response_model=Envelope[RoutineTaskRead])
def get_routine_task(routine_id: str, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    row = service.get_routine_task(principal, routine_id)
    return ok("Routine task retrieved successfully", RoutineTaskRead.model_validate(row))


@router.put("/{routine_id}", response_model=Envelope[RoutineTaskRead])
def update_routine_task(
    routine_id: str,
    payload: RoutineTaskUpdate,
    principal: CurrentPrincipal,
    service: Service,
) -> dict[str, object]:
    row = service.update_routine_task(principal, routine_id, payload)
    return ok("Routine task updated successfully", RoutineTaskRead.model_validate(row))

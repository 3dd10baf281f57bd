from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from tasktrack.api.deps import CurrentPrincipal, require_roles
from tasktrack.api.responses import Envelope, PageEnvelope, ok, paged
from tasktrack.domain.models import (
    DepartmentCreate,
    DepartmentRead,
    DepartmentUpdate,
    Role,
    UserCreate,
    UserRead,
    UserUpdate,
)
from tasktrack.services.directory_service import DirectoryService

departments_router = APIRouter()
users_router = APIRouter()


def get_directory_service() -> DirectoryService:
    return DirectoryService()


Service = Annotated[DirectoryService, Depends(get_directory_service)]


@departments_router.get("", response_model=Envelope[list[DepartmentRead]])
def list_departments(principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    return ok("Departments retrieved successfully", service.list_departments(principal))


@departments_router.post(
    "",
    response_model=Envelope[DepartmentRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(Role.SUPER_ADMIN))],
)
def create_department(payload: DepartmentCreate, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    return ok("Department created successfully", service.create_department(principal, payload))


@departments_router.patch(
    "/{department_id}",
    response_model=Envelope[DepartmentRead],
    dependencies=[Depends(require_roles(Role.SUPER_ADMIN))],
)
def update_department(
    department_id: str,
    payload: DepartmentUpdate,
    principal: CurrentPrincipal,
    service: Service,
) -> dict[str, object]:
    return ok("Department updated successfully", service.update_department(principal, department_id, payload))


@departments_router.post(
    "/{department_id}/managers/{user_id}",
    response_model=Envelope[DepartmentRead],
    dependencies=[Depends(require_roles(Role.SUPER_ADMIN))],
)
def add_department_manager(
    department_id: str,
    user_id: str,
    principal: CurrentPrincipal,
    service: Service,
) -> dict[str, object]:
    department = service.add_department_manager(principal, department_id, user_id)
    return ok("Department manager added successfully", department)


@users_router.get("", response_model=PageEnvelope[UserRead])
def list_users(
    principal: CurrentPrincipal,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    department_id: Annotated[str | None, Query(alias="departmentId")] = None,
) -> dict[str, object]:
    rows, total = service.list_users(principal, department_id=department_id, page=page, limit=limit)
    return paged(
        "Users retrieved successfully",
        [UserRead.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
    )


@users_router.post("", response_model=Envelope[UserRead], status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    user = service.create_user(principal, payload)
    return ok("User created successfully. A verification email has been sent.", UserRead.model_validate(user))


@users_router.patch("/{user_id}", response_model=Envelope[UserRead])
def update_user(user_id: str, payload: UserUpdate, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    user = service.update_user(principal, user_id, payload)
    return ok("User updated successfully", UserRead.model_validate(user))

from __future__ import annotations

from typing import TypeVar

from sqlmodel import Session, SQLModel

from tasktrack.domain.errors import ErrorCode, NotFoundError
from tasktrack.domain.models import Department, Principal, User
from tasktrack.domain.permissions import (
    check_company_scope,
    check_department_scope,
    check_user_management,
)
from tasktrack.infra.db import get_engine

RowT = TypeVar("RowT", bound=SQLModel)


class AccessService:
    """Loads the reference rows a permission rule needs; never writes."""

    def __init__(self, session: Session | None = None) -> None:
        self._external = session

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get(self, model: type[RowT], row_id: str) -> RowT | None:
        if self._external is not None:
            return self._external.get(model, row_id)
        with self._session() as session:
            return session.get(model, row_id)

    def authorize_company(self, principal: Principal, company_id: str | None) -> str:
        return check_company_scope(principal, company_id)

    def authorize_department(self, principal: Principal, department_id: str | None) -> Department:
        if department_id is None:
            return principal.department
        return check_department_scope(principal, self._get(Department, department_id))

    def authorize_user_management(self, principal: Principal, target_user_id: str | None) -> User | None:
        # Role check first so plain Users learn nothing about other accounts.
        check_user_management(principal, None)
        if target_user_id is None:
            return None
        target = self._get(User, target_user_id)
        if target is None:
            raise NotFoundError(ErrorCode.USER_NOT_FOUND, "User not found")
        check_user_management(principal, target)
        return target

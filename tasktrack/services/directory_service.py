from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func
from sqlmodel import Session, col, select

from tasktrack.domain.errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tasktrack.domain.models import (
    LEADER_ROLES,
    Department,
    DepartmentCreate,
    DepartmentManager,
    DepartmentRead,
    DepartmentUpdate,
    Principal,
    Role,
    User,
    UserCreate,
    UserUpdate,
    now_utc,
)
from tasktrack.domain.permissions import check_company_scope, check_department_scope, check_user_management
from tasktrack.infra.auth import hash_password
from tasktrack.infra.db import get_engine
from tasktrack.infra.events import event_bus
from tasktrack.infra.unit_of_work import UnitOfWork
from tasktrack.services import mailer
from tasktrack.services.access_service import AccessService
from tasktrack.services.identity_service import IdentityService, capitalize_words
from tasktrack.services.mailer import TokenPurpose


class DirectoryService:
    """Department and user administration within one company."""

    def __init__(self) -> None:
        self._access = AccessService()
        self._identity = IdentityService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _manager_map(session: Session, department_ids: Iterable[str]) -> dict[str, list[str]]:
        ids = list(department_ids)
        mapping: dict[str, list[str]] = {department_id: [] for department_id in ids}
        if not ids:
            return mapping
        rows = session.exec(select(DepartmentManager).where(col(DepartmentManager.department_id).in_(ids))).all()
        for row in rows:
            mapping[row.department_id].append(row.user_id)
        return mapping

    @staticmethod
    def _department_read(department: Department, manager_ids: list[str]) -> DepartmentRead:
        return DepartmentRead.model_validate({**department.model_dump(), "manager_ids": sorted(manager_ids)})

    @staticmethod
    def _ensure_unique_department_name(session: Session, company_id: str, name: str, exclude_id: str | None = None) -> None:
        statement = select(Department).where(Department.company_id == company_id).where(Department.name == name)
        if exclude_id is not None:
            statement = statement.where(Department.id != exclude_id)
        if session.exec(statement).first() is not None:
            raise ConflictError(ErrorCode.DEPARTMENT_EXISTS, "Department name already exists")

    def list_departments(self, principal: Principal) -> list[DepartmentRead]:
        with self._session() as session:
            statement = select(Department).where(Department.company_id == principal.company_id)
            if principal.role != Role.SUPER_ADMIN:
                visible = {principal.department_id}
                if principal.role == Role.MANAGER:
                    visible |= principal.managed_department_ids
                statement = statement.where(col(Department.id).in_(visible))
            rows = session.exec(statement.order_by(col(Department.name).asc())).all()
            managers = self._manager_map(session, [row.id for row in rows])
            return [self._department_read(row, managers[row.id]) for row in rows]

    def create_department(self, principal: Principal, payload: DepartmentCreate) -> DepartmentRead:
        name = capitalize_words(payload.name)
        with UnitOfWork() as uow:
            self._ensure_unique_department_name(uow.session, principal.company_id, name)
            row = Department(
                company_id=principal.company_id,
                name=name,
                description=payload.description.strip() if payload.description else None,
            )
            uow.session.add(row)
            event = event_bus.build(
                "department.created",
                principal.company_id,
                {"department_id": row.id},
                actor_id=principal.user_id,
            )
            event_bus.record(event, uow.session)
            uow.commit()
        event_bus.notify(event)
        return self._department_read(row, [])

    def update_department(self, principal: Principal, department_id: str, payload: DepartmentUpdate) -> DepartmentRead:
        with UnitOfWork() as uow:
            session = uow.session
            row = check_department_scope(principal, session.get(Department, department_id))
            if payload.name is not None:
                name = capitalize_words(payload.name)
                self._ensure_unique_department_name(session, row.company_id, name, exclude_id=row.id)
                row.name = name
            if payload.description is not None:
                row.description = payload.description.strip() or None
            if payload.is_active is not None:
                row.is_active = payload.is_active
            row.updated_at = now_utc()
            session.add(row)
            uow.commit()
            managers = self._manager_map(session, [row.id])
        return self._department_read(row, managers[row.id])

    def add_department_manager(self, principal: Principal, department_id: str, user_id: str) -> DepartmentRead:
        with UnitOfWork() as uow:
            session = uow.session
            department = check_department_scope(principal, session.get(Department, department_id))
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(ErrorCode.USER_NOT_FOUND, "User not found")
            check_company_scope(principal, user.company_id)
            if user.role not in LEADER_ROLES:
                raise ValidationError(
                    ErrorCode.VALIDATION_ERROR,
                    "Only Managers or SuperAdmins can be department managers",
                )
            if session.get(DepartmentManager, (department.id, user.id)) is None:
                session.add(DepartmentManager(department_id=department.id, user_id=user.id))
                uow.commit()
            managers = self._manager_map(session, [department.id])
            return self._department_read(department, managers[department.id])

    def list_users(
        self,
        principal: Principal,
        *,
        department_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[User], int]:
        self._access.authorize_user_management(principal, None)
        department = self._access.authorize_department(principal, department_id)
        statement = (
            select(User)
            .where(User.company_id == principal.company_id)
            .where(User.department_id == department.id)
        )
        with self._session() as session:
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            rows = session.exec(
                statement.order_by(col(User.last_name).asc(), col(User.first_name).asc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return list(rows), int(total)

    def create_user(self, principal: Principal, payload: UserCreate) -> User:
        check_user_management(principal, None)
        department = self._access.authorize_department(principal, payload.department_id)
        if principal.role == Role.MANAGER:
            if department.id != principal.department_id:
                raise PermissionDeniedError(
                    ErrorCode.DEPARTMENT_ACCESS_DENIED,
                    "Cannot manage users outside your department",
                )
            if payload.role != Role.USER:
                raise PermissionDeniedError(
                    ErrorCode.PRIVILEGE_DENIED,
                    "Cannot manage users with equal or higher privileges",
                )

        email = payload.email.lower()
        with UnitOfWork() as uow:
            session = uow.session
            if session.exec(select(User).where(User.email == email)).first() is not None:
                raise ConflictError(ErrorCode.EMAIL_EXISTS, "Email already in use")
            user = User(
                company_id=principal.company_id,
                department_id=department.id,
                first_name=capitalize_words(payload.first_name),
                last_name=capitalize_words(payload.last_name),
                position=capitalize_words(payload.position) if payload.position else None,
                email=email,
                password_hash=hash_password(payload.password),
                role=payload.role,
            )
            raw_token, expires_at = self._identity.issue_verification_token(session, user)
            event = event_bus.build(
                "user.created",
                principal.company_id,
                {"user_id": user.id, "department_id": department.id, "role": str(payload.role)},
                actor_id=principal.user_id,
            )
            event_bus.record(event, session)
            uow.commit()

        event_bus.notify(event)
        mailer.get_mailer().send_token(
            purpose=TokenPurpose.VERIFY_EMAIL,
            email=user.email,
            token=raw_token,
            expires_at=expires_at,
        )
        return user

    def update_user(self, principal: Principal, user_id: str, payload: UserUpdate) -> User:
        self._access.authorize_user_management(principal, user_id)
        if principal.role == Role.MANAGER and payload.role is not None and payload.role != Role.USER:
            raise PermissionDeniedError(
                ErrorCode.PRIVILEGE_DENIED,
                "Cannot grant equal or higher privileges",
            )

        with UnitOfWork() as uow:
            session = uow.session
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(ErrorCode.USER_NOT_FOUND, "User not found")
            if payload.first_name is not None:
                user.first_name = capitalize_words(payload.first_name)
            if payload.last_name is not None:
                user.last_name = capitalize_words(payload.last_name)
            if payload.position is not None:
                user.position = capitalize_words(payload.position) or None
            if payload.role is not None:
                user.role = payload.role
            if payload.is_active is not None:
                user.is_active = payload.is_active
            user.updated_at = now_utc()
            session.add(user)
            uow.commit()
        return user

"""Role-based access rules.

Each scope (company, department, user management) has its own check so the
rules can be exercised in isolation. The checks are pure: callers load the
department or target user and pass it in; nothing here touches the database.
"""

from __future__ import annotations

from collections.abc import Iterable

from tasktrack.domain.errors import ErrorCode, NotFoundError, PermissionDeniedError
from tasktrack.domain.models import LEADER_ROLES, Department, Principal, Role, User


def is_leader(principal: Principal) -> bool:
    return principal.role in LEADER_ROLES


def require_role(principal: Principal, roles: Iterable[Role]) -> None:
    allowed = list(roles)
    if principal.role not in allowed:
        raise PermissionDeniedError(
            ErrorCode.INSUFFICIENT_ROLE,
            f"Access denied. Required roles: {', '.join(str(role) for role in allowed)}",
        )


def check_company_scope(principal: Principal, company_id: str | None) -> str:
    """Return the effective company id; an unspecified target means the principal's own."""
    if company_id is None or company_id == principal.company_id:
        return principal.company_id
    raise PermissionDeniedError(
        ErrorCode.CROSS_TENANT_DENIED,
        "Access denied to resources from different company",
    )


def can_access_department(principal: Principal, department_id: str) -> bool:
    if principal.role == Role.SUPER_ADMIN:
        return True
    if department_id == principal.department_id:
        return True
    if principal.role == Role.MANAGER:
        return department_id in principal.managed_department_ids
    return False


def check_department_scope(principal: Principal, department: Department | None) -> Department:
    if department is None:
        raise NotFoundError(ErrorCode.DEPARTMENT_NOT_FOUND, "Department not found")
    check_company_scope(principal, department.company_id)
    if not can_access_department(principal, department.id):
        raise PermissionDeniedError(
            ErrorCode.DEPARTMENT_ACCESS_DENIED,
            "Access denied to this department",
        )
    return department


def check_user_management(principal: Principal, target: User | None) -> None:
    """Decide whether ``principal`` may manage ``target``.

    A ``None`` target means the operation is not aimed at a specific user yet
    (e.g. listing or creating); only the role itself is checked then.
    """
    if principal.role == Role.USER:
        raise PermissionDeniedError(
            ErrorCode.PRIVILEGE_DENIED,
            "Insufficient permissions to manage users",
        )
    if target is None:
        return
    check_company_scope(principal, target.company_id)
    if principal.role == Role.SUPER_ADMIN:
        return
    if target.department_id != principal.department_id:
        raise PermissionDeniedError(
            ErrorCode.DEPARTMENT_ACCESS_DENIED,
            "Cannot manage users outside your department",
        )
    if target.role in LEADER_ROLES:
        raise PermissionDeniedError(
            ErrorCode.PRIVILEGE_DENIED,
            "Cannot manage users with equal or higher privileges",
        )

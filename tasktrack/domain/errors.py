from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorCode(StrEnum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INVALID_TASK_TYPE = "INVALID_TASK_TYPE"
    INVALID_DUE_DATE = "INVALID_DUE_DATE"
    PAST_DUE_DATE = "PAST_DUE_DATE"
    MISSING_ASSIGNEES = "MISSING_ASSIGNEES"
    INVALID_ASSIGNEES = "INVALID_ASSIGNEES"
    MISSING_CLIENT_INFO = "MISSING_CLIENT_INFO"
    INVALID_PHONE = "INVALID_PHONE"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    TOKEN_INVALID_OR_EXPIRED = "TOKEN_INVALID_OR_EXPIRED"

    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    CREDENTIAL_INVALID = "CREDENTIAL_INVALID"
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_NOT_VERIFIED = "ACCOUNT_NOT_VERIFIED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    TENANT_DEACTIVATED = "TENANT_DEACTIVATED"
    DEPARTMENT_DEACTIVATED = "DEPARTMENT_DEACTIVATED"

    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    CROSS_TENANT_DENIED = "CROSS_TENANT_DENIED"
    DEPARTMENT_ACCESS_DENIED = "DEPARTMENT_ACCESS_DENIED"
    PRIVILEGE_DENIED = "PRIVILEGE_DENIED"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    FORBIDDEN = "FORBIDDEN"

    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    ROUTINE_TASK_NOT_FOUND = "ROUTINE_TASK_NOT_FOUND"
    DEPARTMENT_NOT_FOUND = "DEPARTMENT_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NOTIFICATION_NOT_FOUND = "NOTIFICATION_NOT_FOUND"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"

    CONFLICT = "CONFLICT"
    COMPANY_EXISTS = "COMPANY_EXISTS"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    DEPARTMENT_EXISTS = "DEPARTMENT_EXISTS"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

    RATE_LIMITED = "RATE_LIMITED"
    HTTP_ERROR = "HTTP_ERROR"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TaskTrackError(Exception):
    """Base for every error that carries a stable client-facing code.

    Clients branch on ``code``; ``message`` is for humans and may change.
    """

    status_code: ClassVar[int] = 500

    def __init__(self, code: ErrorCode, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail or {}


class ValidationError(TaskTrackError):
    status_code = 400


class AuthError(TaskTrackError):
    status_code = 401


class PermissionDeniedError(TaskTrackError):
    status_code = 403


class NotFoundError(TaskTrackError):
    status_code = 404


class ConflictError(TaskTrackError):
    status_code = 409


class RateLimitedError(TaskTrackError):
    status_code = 429


class TransactionError(TaskTrackError):
    status_code = 500

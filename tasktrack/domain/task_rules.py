from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from tasktrack.domain.errors import ErrorCode, ValidationError
from tasktrack.domain.models import TaskType, as_utc

PHONE_PATTERN = re.compile(r"^(09\d{8}|\+2519\d{8})$")
PHONE_LOCAL_PREFIX = "09"
PHONE_INTERNATIONAL_PREFIX = "+2519"

IMMUTABLE_TASK_FIELDS = frozenset(
    {"task_type", "created_by", "department", "department_id", "company", "company_id", "status"}
)
COMMON_MUTABLE_FIELDS = ("title", "description", "location", "due_date", "priority")
VARIANT_MUTABLE_FIELDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.ASSIGNED: ("assigned_to",),
    TaskType.PROJECT: ("client_info",),
}
IMPORTANT_FIELDS = frozenset({"title", "due_date", "priority", "assigned_to"})


def normalize_phone(raw: str) -> str:
    value = raw.strip()
    if not PHONE_PATTERN.match(value):
        raise ValidationError(ErrorCode.INVALID_PHONE, "Invalid phone number format for Ethiopia.")
    if value.startswith(PHONE_LOCAL_PREFIX):
        return PHONE_INTERNATIONAL_PREFIX + value[len(PHONE_LOCAL_PREFIX) :]
    return value


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def missing_fields(required: Mapping[str, Any]) -> list[str]:
    return [label for label, value in required.items() if is_blank(value)]


def parse_due_date(raw: str | datetime) -> datetime:
    if isinstance(raw, datetime):
        return as_utc(raw)
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError as exc:
        raise ValidationError(ErrorCode.INVALID_DUE_DATE, "Invalid due date format") from exc
    return as_utc(parsed)


def mutable_fields_for(task_type: TaskType) -> tuple[str, ...]:
    return COMMON_MUTABLE_FIELDS + VARIANT_MUTABLE_FIELDS[task_type]


def filter_task_changes(task_type: TaskType, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Drop immutable keys and keys that do not belong to the task's variant."""
    allowed = set(mutable_fields_for(task_type))
    return {
        key: value
        for key, value in changes.items()
        if key not in IMMUTABLE_TASK_FIELDS and key in allowed and value is not None
    }


def _comparable(field: str, value: Any) -> Any:
    if field == "assigned_to":
        return frozenset(value or ())
    if field == "due_date" and isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, Mapping):
        return {key: item for key, item in value.items() if item is not None}
    return value


def diff_fields(before: Mapping[str, Any], after: Mapping[str, Any], fields: Iterable[str]) -> set[str]:
    return {field for field in fields if _comparable(field, before.get(field)) != _comparable(field, after.get(field))}


def has_important_change(changed: Iterable[str]) -> bool:
    return any(field in IMPORTANT_FIELDS for field in changed)


def routine_progress(items: Iterable[Mapping[str, Any]]) -> int:
    """Percentage of completed items, rounded half up; 0 for an empty list."""
    entries = list(items)
    total = len(entries)
    if total == 0:
        return 0
    completed = sum(1 for item in entries if item.get("is_completed"))
    return (200 * completed + total) // (2 * total)

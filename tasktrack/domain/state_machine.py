from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    PENDING = "Pending"


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.TODO: {TaskStatus.IN_PROGRESS, TaskStatus.PENDING},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.PENDING,
    },
    TaskStatus.COMPLETED: {TaskStatus.PENDING, TaskStatus.IN_PROGRESS},
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED},
}


def can_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def is_self_transition(source: TaskStatus, target: TaskStatus) -> bool:
    # Allowed by the table, but recorded as a no-op: no status write, no activity.
    return source == target and can_transition(source, target)

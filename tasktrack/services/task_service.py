from __future__ import annotations

from collections.abc import Iterable
from typing import Any

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
    ActivityCreate,
    ClientInfoInput,
    NotificationType,
    Principal,
    Role,
    Task,
    TaskActivity,
    TaskActivityRead,
    TaskAssignee,
    TaskCreate,
    TaskPriority,
    TaskRead,
    TaskType,
    TaskUpdate,
    User,
    now_utc,
)
from tasktrack.domain.state_machine import TaskStatus, can_transition, is_self_transition
from tasktrack.domain.task_rules import (
    diff_fields,
    filter_task_changes,
    has_important_change,
    missing_fields,
    mutable_fields_for,
    normalize_phone,
    parse_due_date,
)
from tasktrack.infra.db import get_engine
from tasktrack.infra.events import event_bus
from tasktrack.infra.realtime import PushMessage
from tasktrack.infra.unit_of_work import UnitOfWork
from tasktrack.services.access_service import AccessService
from tasktrack.services.notification_service import NotificationDispatcher, NotificationDraft

TaskResult = tuple[TaskRead, list[PushMessage]]


class TaskService:
    def __init__(self) -> None:
        self._access = AccessService()
        self._dispatcher = NotificationDispatcher()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _parse_task_type(raw: str) -> TaskType:
        try:
            return TaskType(raw.strip())
        except ValueError as exc:
            raise ValidationError(
                ErrorCode.INVALID_TASK_TYPE,
                "Task type must be either 'AssignedTask' or 'ProjectTask'",
            ) from exc

    @staticmethod
    def _client_info(raw: ClientInfoInput | dict[str, Any] | None) -> dict[str, Any]:
        if raw is None:
            raise ValidationError(ErrorCode.MISSING_CLIENT_INFO, "ProjectTask must include client information")
        info = raw if isinstance(raw, dict) else raw.model_dump()
        name = (info.get("name") or "").strip()
        phone = (info.get("phone") or "").strip()
        if not name or not phone:
            raise ValidationError(
                ErrorCode.MISSING_CLIENT_INFO,
                "Client name and phone are required for ProjectTask",
            )
        address = (info.get("address") or "").strip()
        return {"name": name, "phone": normalize_phone(phone), "address": address or None}

    def _validate_assignees(self, session: Session, company_id: str, department_id: str, ids: list[str]) -> list[str]:
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            raise ValidationError(ErrorCode.MISSING_ASSIGNEES, "AssignedTask must have at least one assigned user")
        found = session.exec(
            select(User.id)
            .where(col(User.id).in_(unique_ids))
            .where(User.company_id == company_id)
            .where(User.department_id == department_id)
            .where(col(User.is_active).is_(True))
        ).all()
        if len(found) != len(unique_ids):
            raise ValidationError(
                ErrorCode.INVALID_ASSIGNEES,
                "One or more assigned users not found or not in your department",
            )
        return unique_ids

    @staticmethod
    def _department_leader_ids(session: Session, company_id: str, department_id: str) -> list[str]:
        rows = session.exec(
            select(User.id)
            .where(User.company_id == company_id)
            .where(User.department_id == department_id)
            .where(col(User.role).in_(LEADER_ROLES))
            .where(col(User.is_active).is_(True))
        ).all()
        return list(rows)

    @staticmethod
    def _assignee_ids(session: Session, task_id: str) -> list[str]:
        return list(session.exec(select(TaskAssignee.user_id).where(TaskAssignee.task_id == task_id)).all())

    @staticmethod
    def _assignee_map(session: Session, task_ids: Iterable[str]) -> dict[str, list[str]]:
        ids = list(task_ids)
        mapping: dict[str, list[str]] = {task_id: [] for task_id in ids}
        if not ids:
            return mapping
        for row in session.exec(select(TaskAssignee).where(col(TaskAssignee.task_id).in_(ids))).all():
            mapping[row.task_id].append(row.user_id)
        return mapping

    @staticmethod
    def _shares_department(principal: Principal, department_id: str) -> bool:
        return department_id == principal.department_id or department_id in principal.managed_department_ids

    def _load_task(self, session: Session, principal: Principal, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None or task.company_id != principal.company_id:
            raise NotFoundError(ErrorCode.TASK_NOT_FOUND, "Task not found")
        return task

    def _ensure_can_view(self, principal: Principal, assignee_ids: list[str]) -> None:
        if principal.role == Role.USER and principal.user_id not in assignee_ids:
            raise PermissionDeniedError(ErrorCode.FORBIDDEN, "You do not have permission to view this task")

    def _ensure_can_modify(self, principal: Principal, task: Task) -> None:
        if principal.role == Role.USER:
            raise PermissionDeniedError(ErrorCode.PERMISSION_DENIED, "You do not have permission to update this task")
        is_creator = task.created_by == principal.user_id
        if not (is_creator or self._shares_department(principal, task.department_id)):
            raise PermissionDeniedError(ErrorCode.PERMISSION_DENIED, "Not authorized to update this task")

    def create_task(self, principal: Principal, payload: TaskCreate) -> TaskResult:
        missing = missing_fields(
            {
                "title": payload.title,
                "description": payload.description,
                "due_date": payload.due_date,
                "task_type": payload.task_type,
                "location": payload.location,
            }
        )
        if missing or payload.task_type is None or payload.due_date is None:
            raise ValidationError(
                ErrorCode.MISSING_REQUIRED_FIELDS,
                f"Missing required fields: {', '.join(missing)}",
                {"fields": missing},
            )
        task_type = self._parse_task_type(payload.task_type)
        due_date = parse_due_date(payload.due_date)
        if due_date < now_utc():
            raise ValidationError(ErrorCode.PAST_DUE_DATE, "Due date cannot be in the past")

        client_info = self._client_info(payload.client_info) if task_type == TaskType.PROJECT else None

        with UnitOfWork() as uow:
            session = uow.session
            drafts: list[NotificationDraft] = []
            assignee_ids: list[str] = []
            title = (payload.title or "").strip()
            if task_type == TaskType.ASSIGNED:
                assignee_ids = self._validate_assignees(
                    session,
                    principal.company_id,
                    principal.department_id,
                    payload.assigned_to or [],
                )
                drafts = [
                    NotificationDraft(user_id, NotificationType.TASK_ASSIGNMENT, f"New assigned task: {title}")
                    for user_id in assignee_ids
                    if user_id != principal.user_id
                ]
            else:
                drafts = [
                    NotificationDraft(
                        user_id,
                        NotificationType.TASK_ASSIGNMENT,
                        f"New project task: {title}",
                        broadcast=True,
                    )
                    for user_id in self._department_leader_ids(session, principal.company_id, principal.department_id)
                    if user_id != principal.user_id
                ]

            task = Task(
                company_id=principal.company_id,
                department_id=principal.department_id,
                task_type=task_type,
                title=title,
                description=(payload.description or "").strip(),
                location=(payload.location or "").strip(),
                due_date=due_date,
                priority=payload.priority or TaskPriority.MEDIUM,
                created_by=principal.user_id,
                client_info=client_info,
            )
            session.add(task)
            session.flush()
            session.add_all([TaskAssignee(task_id=task.id, user_id=user_id) for user_id in assignee_ids])
            event_name = "task-assigned" if task_type == TaskType.ASSIGNED else "project-task-created"
            pushes = self._dispatcher.stage(session, task, drafts, event=event_name, actor_id=principal.user_id)
            event = event_bus.build(
                "task.created",
                principal.company_id,
                {"task_id": task.id, "task_type": str(task_type), "department_id": task.department_id},
                actor_id=principal.user_id,
            )
            event_bus.record(event, session)
            uow.commit()

        event_bus.notify(event)
        return TaskRead.from_task(task, assignee_ids), pushes

    def list_tasks(
        self,
        principal: Principal,
        *,
        department_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[TaskRead], int]:
        department = self._access.authorize_department(principal, department_id)
        statement = (
            select(Task)
            .where(Task.company_id == principal.company_id)
            .where(Task.department_id == department.id)
        )
        if status is not None:
            statement = statement.where(Task.status == status)
        if task_type:
            statement = statement.where(Task.task_type == self._parse_task_type(task_type))
        if principal.role == Role.USER:
            statement = (
                statement.where(Task.task_type == TaskType.ASSIGNED)
                .join(TaskAssignee, col(TaskAssignee.task_id) == col(Task.id))
                .where(TaskAssignee.user_id == principal.user_id)
            )

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(statement.subquery())).one()
            rows = session.exec(
                statement.order_by(col(Task.created_at).desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            assignees = self._assignee_map(session, [row.id for row in rows])
            return [TaskRead.from_task(row, assignees[row.id]) for row in rows], int(total)

    def get_task(self, principal: Principal, task_id: str) -> TaskRead:
        with self._session() as session:
            task = self._load_task(session, principal, task_id)
            assignee_ids = self._assignee_ids(session, task.id)
            self._ensure_can_view(principal, assignee_ids)
            return TaskRead.from_task(task, assignee_ids)

    def update_task(self, principal: Principal, task_id: str, payload: TaskUpdate) -> TaskResult:
        with UnitOfWork() as uow:
            session = uow.session
            task = self._load_task(session, principal, task_id)
            self._ensure_can_modify(principal, task)

            original_assignees = self._assignee_ids(session, task.id)
            before: dict[str, Any] = {
                "title": task.title,
                "description": task.description,
                "location": task.location,
                "due_date": task.due_date,
                "priority": task.priority,
                "assigned_to": original_assignees,
                "client_info": task.client_info,
            }
            changes = filter_task_changes(TaskType(task.task_type), payload.model_dump(exclude_unset=True))
            after = dict(before)
            for key, value in changes.items():
                if key in {"title", "description", "location"}:
                    after[key] = str(value).strip()
                elif key == "due_date":
                    after[key] = parse_due_date(value)
                elif key == "priority":
                    after[key] = TaskPriority(value)
                elif key == "assigned_to":
                    after[key] = self._validate_assignees(session, task.company_id, task.department_id, value)
                elif key == "client_info":
                    after[key] = self._client_info(value)

            changed = diff_fields(before, after, mutable_fields_for(TaskType(task.task_type)))
            if not changed:
                return TaskRead.from_task(task, original_assignees), []

            for key in changed - {"assigned_to"}:
                setattr(task, key, after[key])
            new_assignees: list[str] = []
            if "assigned_to" in changed:
                current = set(after["assigned_to"])
                for row in session.exec(select(TaskAssignee).where(TaskAssignee.task_id == task.id)).all():
                    if row.user_id not in current:
                        session.delete(row)
                new_assignees = [user_id for user_id in after["assigned_to"] if user_id not in original_assignees]
                session.add_all([TaskAssignee(task_id=task.id, user_id=user_id) for user_id in new_assignees])
            task.updated_at = now_utc()
            session.add(task)

            drafts = [
                NotificationDraft(user_id, NotificationType.TASK_ASSIGNMENT, f"Assigned to task: {task.title}")
                for user_id in new_assignees
                if user_id != principal.user_id
            ]
            if has_important_change(changed):
                if task.created_by != principal.user_id:
                    drafts.append(
                        NotificationDraft(task.created_by, NotificationType.TASK_UPDATE, f"Task updated: {task.title}")
                    )
                if task.task_type == TaskType.ASSIGNED:
                    drafts.extend(
                        NotificationDraft(user_id, NotificationType.TASK_UPDATE, f"Task modified: {task.title}")
                        for user_id in original_assignees
                        if user_id != principal.user_id
                    )
                else:
                    drafts.extend(
                        NotificationDraft(
                            user_id,
                            NotificationType.TASK_UPDATE,
                            f"Project task updated: {task.title}",
                            broadcast=True,
                        )
                        for user_id in self._department_leader_ids(session, task.company_id, task.department_id)
                        if user_id != principal.user_id
                    )
            pushes = self._dispatcher.stage(session, task, drafts, event="notification-update", actor_id=principal.user_id)
            event = event_bus.build(
                "task.updated",
                task.company_id,
                {"task_id": task.id, "changed_fields": sorted(changed)},
                actor_id=principal.user_id,
            )
            event_bus.record(event, session)
            uow.commit(integrity_as_conflict=False)

        event_bus.notify(event)
        assignee_ids = after["assigned_to"] if task.task_type == TaskType.ASSIGNED else []
        return TaskRead.from_task(task, assignee_ids), pushes

    def log_activity(
        self,
        principal: Principal,
        task_id: str,
        payload: ActivityCreate,
    ) -> tuple[TaskActivityRead | None, TaskRead, list[PushMessage]]:
        """Append an activity entry, applying the status change it carries.

        Returns ``None`` for the activity when the request is the In Progress
        self-transition, which leaves the task and its log untouched.
        """
        description = payload.description.strip()
        if not description:
            raise ValidationError(
                ErrorCode.MISSING_REQUIRED_FIELDS,
                "Missing required fields: description",
                {"fields": ["description"]},
            )
        with UnitOfWork() as uow:
            session = uow.session
            task = self._load_task(session, principal, task_id)
            assignee_ids = self._assignee_ids(session, task.id)
            if principal.role == Role.USER:
                if principal.user_id not in assignee_ids:
                    raise PermissionDeniedError(ErrorCode.FORBIDDEN, "You are not assigned to this task")
            else:
                self._ensure_can_modify(principal, task)

            source = TaskStatus(task.status)
            target = payload.status
            if target is not None:
                if not can_transition(source, target):
                    raise ConflictError(
                        ErrorCode.INVALID_STATUS_TRANSITION,
                        f"Cannot change status from '{source}' to '{target}'",
                        {"from": str(source), "to": str(target)},
                    )
                if is_self_transition(source, target):
                    return None, TaskRead.from_task(task, assignee_ids), []

            activity = TaskActivity(
                task_id=task.id,
                performed_by=principal.user_id,
                description=description,
                status_from=source if target is not None else None,
                status_to=target,
                attachments=[item.model_dump(mode="json") for item in payload.attachments],
            )
            session.add(activity)
            if target is not None:
                task.status = target
                task.updated_at = now_utc()
                session.add(task)

            message = (
                f"{principal.user.full_name} moved '{task.title}' to {target}"
                if target is not None
                else f"{principal.user.full_name} added activity on '{task.title}'"
            )
            recipients: list[tuple[str, bool]] = [(task.created_by, False)]
            if task.task_type == TaskType.ASSIGNED:
                recipients.extend((user_id, False) for user_id in assignee_ids)
            else:
                recipients.extend(
                    (user_id, True)
                    for user_id in self._department_leader_ids(session, task.company_id, task.department_id)
                )
            drafts = [
                NotificationDraft(user_id, NotificationType.TASK_ACTIVITY, message, broadcast=broadcast)
                for user_id, broadcast in recipients
                if user_id != principal.user_id
            ]
            pushes = self._dispatcher.stage(session, task, drafts, event="task-activity", actor_id=principal.user_id)
            event = event_bus.build(
                "task.status_changed" if target is not None else "task.activity_logged",
                task.company_id,
                {
                    "task_id": task.id,
                    "activity_id": activity.id,
                    "from": str(source) if target is not None else None,
                    "to": str(target) if target is not None else None,
                },
                actor_id=principal.user_id,
            )
            event_bus.record(event, session)
            uow.commit()

        event_bus.notify(event)
        return TaskActivityRead.model_validate(activity), TaskRead.from_task(task, assignee_ids), pushes

    def list_activities(self, principal: Principal, task_id: str) -> list[TaskActivity]:
        with self._session() as session:
            task = self._load_task(session, principal, task_id)
            self._ensure_can_view(principal, self._assignee_ids(session, task.id))
            rows = session.exec(
                select(TaskActivity)
                .where(TaskActivity.task_id == task.id)
                .order_by(col(TaskActivity.created_at).asc())
            ).all()
            return list(rows)

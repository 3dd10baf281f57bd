from __future__ import annotations

from typing import Any

import pytest
from conftest import Tenant
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from tasktrack.domain.models import EventRecord, Notification, NotificationType, Role, TaskActivity
from tasktrack.infra import db

DUE = "2099-06-01T09:00:00+00:00"


@pytest.fixture()
def crew(tenant: Tenant) -> Tenant:
    tenant.add_user("alice")
    tenant.add_user("bob")
    tenant.add_user("mona", role=Role.MANAGER)
    return tenant


def _task(client: TestClient, crew: Tenant, *, task_type: str = "AssignedTask") -> str:
    payload: dict[str, Any] = {
        "title": "Deep clean lobby",
        "description": "Carpets and windows",
        "location": "Lobby",
        "due_date": DUE,
        "task_type": task_type,
    }
    if task_type == "AssignedTask":
        payload["assigned_to"] = [crew.users["alice"]]
    else:
        payload["client_info"] = {"name": "Selam", "phone": "0911223344"}
    response = client.post("/api/tasks", json=payload, headers=crew.headers())
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def _log(client: TestClient, headers: dict[str, str], task_id: str, **body: Any) -> Any:
    body.setdefault("description", "Work note")
    return client.post(f"/api/tasks/{task_id}/activities", json=body, headers=headers)


def _activities(task_id: str) -> list[TaskActivity]:
    with Session(db.get_engine()) as session:
        return list(session.exec(select(TaskActivity).where(TaskActivity.task_id == task_id)).all())


def _status(client: TestClient, crew: Tenant, task_id: str) -> str:
    return client.get(f"/api/tasks/{task_id}", headers=crew.headers()).json()["data"]["status"]


def test_status_walk_records_one_activity_per_transition(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)
    alice = crew.headers("alice")

    for target in ("In Progress", "Pending", "Completed", "In Progress", "Completed"):
        response = _log(client, alice, task_id, status=target, description=f"Now {target}")
        assert response.status_code == 201, response.text
        assert response.json()["data"]["status_to"] == target
        assert _status(client, crew, task_id) == target

    rows = _activities(task_id)
    assert len(rows) == 5
    transitions = sorted((str(row.status_from), str(row.status_to)) for row in rows)
    assert ("To Do", "In Progress") in transitions
    assert ("Pending", "Completed") in transitions

    with Session(db.get_engine()) as session:
        events = session.exec(select(EventRecord).where(EventRecord.event_type == "task.status_changed")).all()
    assert len(events) == 5


def test_invalid_transition_is_rejected_without_side_effects(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)

    response = _log(client, crew.headers("alice"), task_id, status="Completed")
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "INVALID_STATUS_TRANSITION"
    assert body["detail"] == {"from": "To Do", "to": "Completed"}
    assert _status(client, crew, task_id) == "To Do"
    assert _activities(task_id) == []

    back_to_todo = _log(client, crew.headers(), task_id, status="To Do")
    assert back_to_todo.status_code == 409


def test_blank_description_is_rejected(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)

    response = _log(client, crew.headers("alice"), task_id, description="   ", status="In Progress")
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "MISSING_REQUIRED_FIELDS"
    assert body["detail"] == {"fields": ["description"]}
    assert _activities(task_id) == []
    assert _status(client, crew, task_id) == "To Do"


def test_in_progress_self_transition_is_a_no_op(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)
    alice = crew.headers("alice")
    assert _log(client, alice, task_id, status="In Progress").status_code == 201

    repeat = _log(client, alice, task_id, status="In Progress", description="Still going")
    assert repeat.status_code == 201
    assert repeat.json()["data"] is None
    assert len(_activities(task_id)) == 1
    assert _status(client, crew, task_id) == "In Progress"


def test_note_without_status_keeps_status(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)
    response = _log(
        client,
        crew.headers("alice"),
        task_id,
        description="Ordered new vacuum bags",
        attachments=[{"url": "https://files.example/receipt.pdf", "type": "pdf"}],
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status_from"] is None
    assert data["status_to"] is None
    assert data["attachments"][0]["url"] == "https://files.example/receipt.pdf"
    assert _status(client, crew, task_id) == "To Do"


def test_activity_permissions(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)

    outsider = _log(client, crew.headers("bob"), task_id, status="In Progress")
    assert outsider.status_code == 403
    assert outsider.json()["error"] == "FORBIDDEN"

    listing = client.get(f"/api/tasks/{task_id}/activities", headers=crew.headers("bob"))
    assert listing.status_code == 403

    manager = _log(client, crew.headers("mona"), task_id, status="Pending")
    assert manager.status_code == 201

    missing = _log(client, crew.headers(), "no-such-task")
    assert missing.status_code == 404
    assert missing.json()["error"] == "TASK_NOT_FOUND"


def test_activity_notifies_creator_and_assignees_except_actor(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)
    _log(client, crew.headers("alice"), task_id, status="In Progress")

    with Session(db.get_engine()) as session:
        rows = session.exec(select(Notification).where(Notification.type == NotificationType.TASK_ACTIVITY)).all()
    assert [(row.user_id, row.message) for row in rows] == [
        (crew.admin_id, "Alice Tester moved 'Deep clean lobby' to In Progress"),
    ]

    _log(client, crew.headers(), task_id, description="Checked the work")
    with Session(db.get_engine()) as session:
        alice_rows = session.exec(
            select(Notification)
            .where(Notification.user_id == crew.users["alice"])
            .where(Notification.type == NotificationType.TASK_ACTIVITY)
        ).all()
    assert [row.message for row in alice_rows] == ["Abebe Kebede added activity on 'Deep clean lobby'"]


def test_project_activity_reaches_leaders(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew, task_type="ProjectTask")
    response = _log(client, crew.headers("mona"), task_id, status="In Progress")
    assert response.status_code == 201

    with Session(db.get_engine()) as session:
        rows = session.exec(select(Notification).where(Notification.type == NotificationType.TASK_ACTIVITY)).all()
    assert [row.user_id for row in rows] == [crew.admin_id]


def test_activities_are_listed_in_order(client: TestClient, crew: Tenant) -> None:
    task_id = _task(client, crew)
    alice = crew.headers("alice")
    _log(client, alice, task_id, description="first", status="In Progress")
    _log(client, alice, task_id, description="second")

    response = client.get(f"/api/tasks/{task_id}/activities", headers=alice)
    assert response.status_code == 200
    assert [item["description"] for item in response.json()["data"]] == ["first", "second"]

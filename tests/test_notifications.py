from __future__ import annotations

import pytest
from conftest import Tenant
from fastapi.testclient import TestClient

DUE = "2099-06-01T09:00:00+00:00"


@pytest.fixture()
def inbox(client: TestClient, tenant: Tenant) -> Tenant:
    tenant.add_user("alice")
    tenant.add_user("bob")
    for title in ("Restock minibar", "Replace towels", "Check smoke alarms"):
        response = client.post(
            "/api/tasks",
            json={
                "title": title,
                "description": "Routine floor work",
                "location": "Floor 3",
                "due_date": DUE,
                "task_type": "AssignedTask",
                "assigned_to": [tenant.users["alice"]],
            },
            headers=tenant.headers(),
        )
        assert response.status_code == 201
    return tenant


def test_list_notifications_newest_first(client: TestClient, inbox: Tenant) -> None:
    body = client.get("/api/notifications", params={"limit": 2}, headers=inbox.headers("alice")).json()
    assert body["totalItems"] == 3
    assert body["totalPages"] == 2
    assert [item["message"] for item in body["data"]] == [
        "New assigned task: Check smoke alarms",
        "New assigned task: Replace towels",
    ]
    assert all(item["user_id"] == inbox.users["alice"] for item in body["data"])

    assert client.get("/api/notifications", headers=inbox.headers("bob")).json()["totalItems"] == 0


def test_mark_one_read(client: TestClient, inbox: Tenant) -> None:
    alice = inbox.headers("alice")
    first = client.get("/api/notifications", headers=alice).json()["data"][0]

    response = client.patch(f"/api/notifications/{first['id']}/read", headers=alice)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_read"] is True
    assert data["read_at"] is not None

    unread = client.get("/api/notifications", params={"unread": True}, headers=alice).json()
    assert unread["totalItems"] == 2
    assert first["id"] not in [item["id"] for item in unread["data"]]

    again = client.patch(f"/api/notifications/{first['id']}/read", headers=alice)
    assert again.status_code == 200
    assert again.json()["data"]["id"] == first["id"]
    assert again.json()["data"]["is_read"] is True
    assert client.get("/api/notifications", params={"unread": True}, headers=alice).json()["totalItems"] == 2


def test_cannot_touch_someone_elses_notification(client: TestClient, inbox: Tenant) -> None:
    first = client.get("/api/notifications", headers=inbox.headers("alice")).json()["data"][0]

    response = client.patch(f"/api/notifications/{first['id']}/read", headers=inbox.headers("bob"))
    assert response.status_code == 404
    assert response.json()["error"] == "NOTIFICATION_NOT_FOUND"

    still_unread = client.get("/api/notifications", params={"unread": True}, headers=inbox.headers("alice")).json()
    assert still_unread["totalItems"] == 3


def test_mark_all_read(client: TestClient, inbox: Tenant) -> None:
    alice = inbox.headers("alice")
    response = client.patch("/api/notifications/read-all", headers=alice)
    assert response.status_code == 200
    assert response.json()["data"] == {"updated": 3}
    assert client.get("/api/notifications", params={"unread": True}, headers=alice).json()["totalItems"] == 0

    assert client.patch("/api/notifications/read-all", headers=alice).json()["data"] == {"updated": 0}

from __future__ import annotations

import pytest
from conftest import CapturingMailer, registration_payload
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from tasktrack import main as app_main
from tasktrack.domain.models import Company, Department, EventRecord, RegisterRequest, User
from tasktrack.infra import auth, db
from tasktrack.services import identity_service
from tasktrack.services.identity_service import IdentityService


def _fail_hash(_raw: str) -> str:
    raise RuntimeError("hashing backend unavailable")


def _row_counts() -> tuple[int, int, int, int]:
    with Session(db.get_engine()) as session:
        return (
            len(session.exec(select(Company)).all()),
            len(session.exec(select(Department)).all()),
            len(session.exec(select(User)).all()),
            len(session.exec(select(EventRecord)).all()),
        )


def test_registration_leaves_nothing_behind_when_admin_creation_fails(
    client: TestClient,
    mailbox: CapturingMailer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(identity_service, "hash_password", _fail_hash)

    with pytest.raises(RuntimeError):
        IdentityService().register_tenant(RegisterRequest.model_validate(registration_payload()))

    assert _row_counts() == (0, 0, 0, 0)
    assert mailbox.sent == []


def test_registration_failure_surfaces_as_internal_error(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(identity_service, "hash_password", _fail_hash)
    quiet_client = TestClient(app_main.app, raise_server_exceptions=False)

    response = quiet_client.post("/api/auth/register", json=registration_payload())
    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error", "error": "INTERNAL_ERROR"}
    assert _row_counts() == (0, 0, 0, 0)

    # The same company registers cleanly once the fault clears.
    monkeypatch.setattr(identity_service, "hash_password", auth.hash_password)
    assert client.post("/api/auth/register", json=registration_payload()).status_code == 201
    assert _row_counts()[:3] == (1, 1, 1)

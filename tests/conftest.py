from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlmodel import Session, SQLModel

from tasktrack import main as app_main
from tasktrack.api.routers import auth as auth_router
from tasktrack.domain.models import Department, DepartmentManager, Role, User
from tasktrack.infra import audit, auth, db, rate_limit, realtime
from tasktrack.services import mailer
from tasktrack.services.mailer import Mailer, TokenPurpose


@dataclass
class SentToken:
    purpose: TokenPurpose
    email: str
    token: str
    expires_at: datetime


class CapturingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[SentToken] = []

    def send_token(self, *, purpose: TokenPurpose, email: str, token: str, expires_at: datetime) -> None:
        self.sent.append(SentToken(purpose, email, token, expires_at))

    def last(self, purpose: TokenPurpose, email: str | None = None) -> str:
        for item in reversed(self.sent):
            if item.purpose == purpose and (email is None or item.email == email):
                return item.token
        raise AssertionError(f"no {purpose} token sent")


class FakeSocket:
    """Stands in for a websocket registered with the realtime hub."""

    def __init__(self, *, broken: bool = False) -> None:
        self.accepted = False
        self.sent: list[dict[str, Any]] = []
        self.broken = broken

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class FakeRedis:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.expiries: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("redis unavailable")

    def incr(self, key: str) -> int:
        self._check()
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.expiries[key] = seconds
        return True

    def ping(self) -> bool:
        self._check()
        return True


@pytest.fixture()
def mailbox() -> CapturingMailer:
    return CapturingMailer()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    mailbox: CapturingMailer,
    fake_redis: FakeRedis,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "tasktrack_test.db"
    test_engine = db.build_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(auth, "PASSWORD_HASH_ITERATIONS", 1_000)
    monkeypatch.setattr(rate_limit, "get_redis", lambda: fake_redis)
    monkeypatch.setattr(mailer, "get_mailer", lambda: mailbox)
    monkeypatch.setattr(auth_router, "COOKIE_SECURE", False)
    realtime.get_realtime_hub.cache_clear()
    test_client = TestClient(app_main.app)
    yield test_client
    test_client.close()


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def registration_payload(
    company_name: str = "Acme Hotels",
    admin_email: str = "admin@acme.example.com",
    phone: str = "0911000001",
) -> dict[str, object]:
    slug = company_name.lower().replace(" ", "")
    return {
        "company": {
            "name": company_name,
            "email": f"contact@{slug}.example.com",
            "phone": phone,
            "address": "Bole Road, Addis Ababa",
            "size": "11-50 Employees",
            "industry": "Hospitality",
        },
        "admin": {
            "first_name": "abebe",
            "last_name": "kebede",
            "position": "general manager",
            "email": admin_email,
            "password": "secret123",
            "department_name": "front office",
        },
    }


@dataclass
class Tenant:
    company_id: str
    department_id: str
    admin_id: str
    admin_email: str
    admin_password: str = "secret123"
    users: dict[str, str] = field(default_factory=dict)

    @property
    def admin_token(self) -> str:
        return auth.create_access_token(self.admin_id)

    def add_department(self, name: str) -> str:
        with Session(db.get_engine(), expire_on_commit=False) as session:
            department = Department(company_id=self.company_id, name=name)
            session.add(department)
            session.commit()
            return department.id

    def add_user(
        self,
        key: str,
        *,
        role: Role = Role.USER,
        department_id: str | None = None,
        manages: list[str] | None = None,
        is_active: bool = True,
        is_verified: bool = True,
    ) -> str:
        with Session(db.get_engine(), expire_on_commit=False) as session:
            user = User(
                company_id=self.company_id,
                department_id=department_id or self.department_id,
                first_name=key.capitalize(),
                last_name="Tester",
                email=f"{key}@{self.company_id[:8]}.example.com",
                password_hash=auth.hash_password("secret123"),
                role=role,
                is_active=is_active,
                is_verified=is_verified,
            )
            session.add(user)
            session.flush()
            for managed in manages or []:
                session.add(DepartmentManager(department_id=managed, user_id=user.id))
            session.commit()
        self.users[key] = user.id
        return user.id

    def token(self, key: str) -> str:
        return auth.create_access_token(self.users[key])

    def headers(self, key: str | None = None) -> dict[str, str]:
        return auth_header(self.admin_token if key is None else self.token(key))


def register_tenant(
    client: TestClient,
    mailbox: CapturingMailer,
    *,
    company_name: str = "Acme Hotels",
    admin_email: str = "admin@acme.example.com",
    phone: str = "0911000001",
    verify: bool = True,
) -> Tenant:
    response = client.post("/api/auth/register", json=registration_payload(company_name, admin_email, phone))
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    if verify:
        token = mailbox.last(TokenPurpose.VERIFY_EMAIL, admin_email)
        verified = client.post("/api/auth/verify-email", json={"token": token})
        assert verified.status_code == 200, verified.text
    return Tenant(
        company_id=data["company"]["id"],
        department_id=data["department"]["id"],
        admin_id=data["user"]["id"],
        admin_email=admin_email,
    )


@pytest.fixture()
def tenant(client: TestClient, mailbox: CapturingMailer) -> Tenant:
    return register_tenant(client, mailbox)

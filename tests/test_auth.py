from __future__ import annotations

from typing import Any

import pytest
from conftest import CapturingMailer, FakeRedis, Tenant, auth_header, register_tenant, registration_payload
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, select

from tasktrack.domain.models import Company, Department, SubscriptionStatus, User
from tasktrack.infra import auth, db, rate_limit
from tasktrack.services.mailer import TokenPurpose


def _update(model: type[SQLModel], row_id: str, **values: Any) -> None:
    with Session(db.get_engine()) as session:
        row = session.get(model, row_id)
        assert row is not None
        for key, value in values.items():
            setattr(row, key, value)
        session.add(row)
        session.commit()


def _error(response: Any) -> str:
    body = response.json()
    assert body["success"] is False
    return body["error"]


def test_register_creates_company_department_and_admin(client: TestClient, mailbox: CapturingMailer) -> None:
    response = client.post("/api/auth/register", json=registration_payload(phone="0911000001"))
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["company"]["name"] == "Acme Hotels"
    assert data["company"]["phone"] == "+251911000001"
    assert data["company"]["subscription_status"] == "active"
    assert data["department"]["name"] == "Front Office"
    assert data["user"]["role"] == "SuperAdmin"
    assert data["user"]["first_name"] == "Abebe"
    assert data["user"]["is_verified"] is False
    assert data["managed_department_ids"] == [data["department"]["id"]]
    assert mailbox.last(TokenPurpose.VERIFY_EMAIL, "admin@acme.example.com")


def test_register_rejects_duplicates(client: TestClient, mailbox: CapturingMailer) -> None:
    register_tenant(client, mailbox)

    same_company = client.post("/api/auth/register", json=registration_payload(admin_email="other@acme.example.com"))
    assert same_company.status_code == 409
    assert _error(same_company) == "COMPANY_EXISTS"

    same_admin = client.post(
        "/api/auth/register",
        json=registration_payload("Beta Resorts", "admin@acme.example.com", "0911000002"),
    )
    assert same_admin.status_code == 409
    assert _error(same_admin) == "EMAIL_EXISTS"


def test_register_rejects_bad_phone_and_bad_payload(client: TestClient) -> None:
    bad_phone = client.post("/api/auth/register", json=registration_payload(phone="12345"))
    assert bad_phone.status_code == 400
    assert _error(bad_phone) == "INVALID_PHONE"

    payload = registration_payload()
    payload["admin"]["email"] = "not-an-email"  # type: ignore[index]
    invalid = client.post("/api/auth/register", json=payload)
    assert invalid.status_code == 400
    assert _error(invalid) == "VALIDATION_ERROR"
    assert "admin.email" in invalid.json()["detail"]["fields"]


def test_login_requires_verified_account(client: TestClient, mailbox: CapturingMailer) -> None:
    register_tenant(client, mailbox, verify=False)
    response = client.post("/api/auth/login", json={"email": "admin@acme.example.com", "password": "secret123"})
    assert response.status_code == 401
    assert _error(response) == "ACCOUNT_NOT_VERIFIED"


def test_login_validation(client: TestClient, tenant: Tenant) -> None:
    missing = client.post("/api/auth/login", json={"email": tenant.admin_email})
    assert missing.status_code == 400
    assert _error(missing) == "MISSING_CREDENTIALS"

    malformed = client.post("/api/auth/login", json={"email": "nobody", "password": "secret123"})
    assert malformed.status_code == 400
    assert _error(malformed) == "VALIDATION_ERROR"

    wrong = client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "wrong-one"})
    assert wrong.status_code == 401
    assert _error(wrong) == "INVALID_CREDENTIALS"

    unknown = client.post("/api/auth/login", json={"email": "ghost@acme.example.com", "password": "secret123"})
    assert unknown.status_code == 401
    assert _error(unknown) == "INVALID_CREDENTIALS"


def test_login_sets_cookies_and_session_works_from_cookie(client: TestClient, tenant: Tenant) -> None:
    response = client.post("/api/auth/login", json={"email": "ADMIN@acme.example.com ", "password": "secret123"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["user"]["id"] == tenant.admin_id
    assert body["data"]["user"]["last_login_at"] is not None
    cookies = response.headers.get_list("set-cookie")
    assert any(cookie.startswith("access_token=") and "HttpOnly" in cookie for cookie in cookies)
    assert any(cookie.startswith("refresh_token=") and "Path=/api/auth/refresh-token" in cookie for cookie in cookies)

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["company"]["id"] == tenant.company_id


def test_refresh_token_issues_new_access_cookie(client: TestClient, tenant: Tenant) -> None:
    client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "secret123"})
    response = client.get("/api/auth/refresh-token")
    assert response.status_code == 200
    assert response.json()["data"]["user"]["id"] == tenant.admin_id
    assert any(cookie.startswith("access_token=") for cookie in response.headers.get_list("set-cookie"))


def test_refresh_failure_clears_refresh_cookie(client: TestClient, tenant: Tenant) -> None:
    missing = client.get("/api/auth/refresh-token")
    assert missing.status_code == 401
    assert _error(missing) == "MISSING_CREDENTIAL"
    cleared = [c for c in missing.headers.get_list("set-cookie") if c.startswith("refresh_token=")]
    assert cleared and "Max-Age=0" in cleared[0]

    # An access token is not accepted where a refresh token is expected.
    client.cookies.set("refresh_token", tenant.admin_token)
    wrong_kind = client.get("/api/auth/refresh-token")
    assert wrong_kind.status_code == 401
    assert _error(wrong_kind) == "CREDENTIAL_INVALID"


def test_refresh_for_blocked_account_clears_refresh_cookie(client: TestClient, tenant: Tenant) -> None:
    retired = tenant.add_user("retired", is_active=False)
    client.cookies.set("refresh_token", auth.create_refresh_token(retired))
    response = client.get("/api/auth/refresh-token")
    assert response.status_code == 401
    assert _error(response) == "USER_DEACTIVATED"
    cleared = [c for c in response.headers.get_list("set-cookie") if c.startswith("refresh_token=")]
    assert cleared and "Max-Age=0" in cleared[0]
    assert not any(c.startswith("access_token=") for c in response.headers.get_list("set-cookie"))

    _update(Company, tenant.company_id, subscription_status=SubscriptionStatus.SUSPENDED)
    client.cookies.set("refresh_token", auth.create_refresh_token(tenant.admin_id))
    suspended = client.get("/api/auth/refresh-token")
    assert suspended.status_code == 403
    assert _error(suspended) == "SUBSCRIPTION_INACTIVE"
    assert any(
        c.startswith("refresh_token=") and "Max-Age=0" in c for c in suspended.headers.get_list("set-cookie")
    )


def test_credential_failures(client: TestClient, tenant: Tenant) -> None:
    missing = client.get("/api/auth/me")
    assert missing.status_code == 401
    assert _error(missing) == "MISSING_CREDENTIAL"

    expired = client.get("/api/auth/me", headers=auth_header(auth.create_access_token(tenant.admin_id, expires_minutes=-1)))
    assert expired.status_code == 401
    assert _error(expired) == "CREDENTIAL_EXPIRED"

    garbage = client.get("/api/auth/me", headers=auth_header("not-a-token"))
    assert garbage.status_code == 401
    assert _error(garbage) == "CREDENTIAL_INVALID"

    refresh_as_access = client.get("/api/auth/me", headers=auth_header(auth.create_refresh_token(tenant.admin_id)))
    assert refresh_as_access.status_code == 401
    assert _error(refresh_as_access) == "CREDENTIAL_INVALID"

    ghost = client.get("/api/auth/me", headers=auth_header(auth.create_access_token("no-such-user")))
    assert ghost.status_code == 401
    assert _error(ghost) == "SUBJECT_NOT_FOUND"


def test_account_and_tenant_gates(client: TestClient, tenant: Tenant) -> None:
    tenant.add_user("pending", is_verified=False)
    tenant.add_user("retired", is_active=False)

    pending = client.get("/api/auth/me", headers=tenant.headers("pending"))
    assert pending.status_code == 401
    assert _error(pending) == "ACCOUNT_NOT_VERIFIED"

    retired = client.get("/api/auth/me", headers=tenant.headers("retired"))
    assert retired.status_code == 401
    assert _error(retired) == "USER_DEACTIVATED"

    _update(Department, tenant.department_id, is_active=False)
    department_off = client.get("/api/auth/me", headers=tenant.headers())
    assert department_off.status_code == 401
    assert _error(department_off) == "DEPARTMENT_DEACTIVATED"

    _update(Company, tenant.company_id, subscription_status=SubscriptionStatus.SUSPENDED)
    suspended = client.get("/api/auth/me", headers=tenant.headers())
    assert suspended.status_code == 403
    assert _error(suspended) == "SUBSCRIPTION_INACTIVE"

    _update(Company, tenant.company_id, is_active=False)
    company_off = client.get("/api/auth/me", headers=tenant.headers())
    assert company_off.status_code == 401
    assert _error(company_off) == "TENANT_DEACTIVATED"


def test_deactivated_user_is_refused_at_login(client: TestClient, tenant: Tenant) -> None:
    _update(User, tenant.admin_id, is_active=False)
    response = client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "secret123"})
    assert response.status_code == 401
    assert _error(response) == "USER_DEACTIVATED"


def test_verify_email_with_unknown_token(client: TestClient) -> None:
    response = client.post("/api/auth/verify-email", json={"token": "made-up"})
    assert response.status_code == 400
    assert _error(response) == "TOKEN_INVALID_OR_EXPIRED"


def test_password_reset_flow(client: TestClient, mailbox: CapturingMailer, tenant: Tenant) -> None:
    unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@acme.example.com"})
    assert unknown.status_code == 200
    assert not [item for item in mailbox.sent if item.purpose == TokenPurpose.RESET_PASSWORD]

    requested = client.post("/api/auth/forgot-password", json={"email": tenant.admin_email})
    assert requested.status_code == 200
    token = mailbox.last(TokenPurpose.RESET_PASSWORD, tenant.admin_email)

    reset = client.post("/api/auth/reset-password", json={"token": token, "password": "n3w-secret"})
    assert reset.status_code == 200

    reused = client.post("/api/auth/reset-password", json={"token": token, "password": "another1"})
    assert reused.status_code == 400
    assert _error(reused) == "TOKEN_INVALID_OR_EXPIRED"

    old = client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "secret123"})
    assert old.status_code == 401
    new = client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "n3w-secret"})
    assert new.status_code == 200


def test_expired_reset_token_is_rejected(client: TestClient, mailbox: CapturingMailer, tenant: Tenant) -> None:
    client.post("/api/auth/forgot-password", json={"email": tenant.admin_email})
    token = mailbox.last(TokenPurpose.RESET_PASSWORD, tenant.admin_email)
    with Session(db.get_engine()) as session:
        user = session.get(User, tenant.admin_id)
        assert user is not None and user.reset_password_expires_at is not None
        expired_at = user.reset_password_expires_at.replace(year=2000)
    _update(User, tenant.admin_id, reset_password_expires_at=expired_at)

    response = client.post("/api/auth/reset-password", json={"token": token, "password": "n3w-secret"})
    assert response.status_code == 400
    assert _error(response) == "TOKEN_INVALID_OR_EXPIRED"


def test_email_change_flow(client: TestClient, mailbox: CapturingMailer, tenant: Tenant) -> None:
    tenant.add_user("taken")
    taken_email = f"taken@{tenant.company_id[:8]}.example.com"
    conflict = client.post("/api/auth/change-email", json={"new_email": taken_email}, headers=tenant.headers())
    assert conflict.status_code == 409
    assert _error(conflict) == "EMAIL_EXISTS"

    requested = client.post(
        "/api/auth/change-email",
        json={"new_email": "New.Admin@acme.example.com"},
        headers=tenant.headers(),
    )
    assert requested.status_code == 200
    token = mailbox.last(TokenPurpose.CHANGE_EMAIL, "new.admin@acme.example.com")

    confirmed = client.post("/api/auth/confirm-email-change", json={"token": token})
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["email"] == "new.admin@acme.example.com"

    login = client.post("/api/auth/login", json={"email": "new.admin@acme.example.com", "password": "secret123"})
    assert login.status_code == 200


def test_logout_clears_both_cookies(client: TestClient, tenant: Tenant) -> None:
    client.post("/api/auth/login", json={"email": tenant.admin_email, "password": "secret123"})
    response = client.delete("/api/auth/logout")
    assert response.status_code == 200
    cookies = response.headers.get_list("set-cookie")
    assert any(cookie.startswith("access_token=") and "Max-Age=0" in cookie for cookie in cookies)
    assert any(cookie.startswith("refresh_token=") and "Max-Age=0" in cookie for cookie in cookies)


def test_auth_rate_limit(
    client: TestClient,
    tenant: Tenant,
    fake_redis: FakeRedis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(rate_limit, "AUTH_RATE_LIMIT", 2)
    attempt = {"email": tenant.admin_email, "password": "wrong-one"}
    assert client.post("/api/auth/login", json=attempt).status_code == 401
    assert client.post("/api/auth/login", json=attempt).status_code == 401
    blocked = client.post("/api/auth/login", json=attempt)
    assert blocked.status_code == 429
    assert _error(blocked) == "RATE_LIMITED"
    assert fake_redis.expiries["ratelimit:login:testclient"] == rate_limit.AUTH_RATE_WINDOW_SEC

    # Other clients have their own window.
    elsewhere = client.post("/api/auth/login", json=attempt, headers={"X-Forwarded-For": "10.0.0.9"})
    assert elsewhere.status_code == 401


def test_auth_rate_limit_fails_open_without_redis(
    client: TestClient,
    tenant: Tenant,
    fake_redis: FakeRedis,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(rate_limit, "AUTH_RATE_LIMIT", 1)
    fake_redis.down = True
    attempt = {"email": tenant.admin_email, "password": "secret123"}
    assert client.post("/api/auth/login", json=attempt).status_code == 200
    assert client.post("/api/auth/login", json=attempt).status_code == 200


def test_companies_are_isolated(client: TestClient, mailbox: CapturingMailer, tenant: Tenant) -> None:
    other = register_tenant(client, mailbox, company_name="Beta Resorts", admin_email="admin@beta.example.com", phone="0911000002")
    me = client.get("/api/auth/me", headers=other.headers())
    assert me.json()["data"]["company"]["id"] == other.company_id
    with Session(db.get_engine()) as session:
        assert len(session.exec(select(Company)).all()) == 2

from __future__ import annotations

import os
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from tasktrack.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    CurrentPrincipal,
    auth_rate_limit,
    get_identity_service,
)
from tasktrack.api.responses import Envelope, error_body, ok
from tasktrack.domain.errors import TaskTrackError
from tasktrack.domain.models import (
    ChangeEmailRequest,
    CompanyRead,
    DepartmentRead,
    ForgotPasswordRequest,
    LoginRequest,
    Principal,
    RegisterRequest,
    ResetPasswordRequest,
    SessionRead,
    TokenRequest,
    UserRead,
)
from tasktrack.infra import auth as auth_tokens
from tasktrack.infra.logging import bind_principal_context
from tasktrack.services.identity_service import IdentityService

COOKIE_SECURE = os.getenv("COOKIE_SECURE", "true").lower() in {"1", "true", "yes"}
REFRESH_COOKIE_PATH = "/api/auth/refresh-token"

router = APIRouter()

Service = Annotated[IdentityService, Depends(get_identity_service)]


def _session_read(principal: Principal) -> SessionRead:
    return SessionRead(
        user=UserRead.model_validate(principal.user),
        company=CompanyRead.model_validate(principal.company),
        department=DepartmentRead.model_validate(
            {**principal.department.model_dump(), "manager_ids": sorted(principal.managed_department_ids)}
        ),
        managed_department_ids=sorted(principal.managed_department_ids),
    )


def _set_access_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        token,
        max_age=auth_tokens.ACCESS_TOKEN_EXPIRES_MIN * 60,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
    )


def _set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        max_age=auth_tokens.REFRESH_TOKEN_EXPIRES_DAYS * 24 * 3600,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
    )


@router.post(
    "/register",
    response_model=Envelope[SessionRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(auth_rate_limit("register"))],
)
def register(payload: RegisterRequest, service: Service) -> dict[str, object]:
    principal = service.register_tenant(payload)
    return ok(
        "Company registered successfully. Please verify the admin email address.",
        _session_read(principal),
    )


@router.post(
    "/login",
    response_model=Envelope[SessionRead],
    dependencies=[Depends(auth_rate_limit("login"))],
)
def login(payload: LoginRequest, request: Request, response: Response, service: Service) -> dict[str, object]:
    principal, access_token, refresh_token = service.login(payload)
    request.state.principal = principal
    bind_principal_context(principal.company_id, principal.user_id)
    _set_access_cookie(response, access_token)
    _set_refresh_cookie(response, refresh_token)
    return ok("Login successful", _session_read(principal))


@router.delete("/logout", response_model=Envelope[None])
def logout(response: Response) -> dict[str, object]:
    response.delete_cookie(ACCESS_COOKIE, path="/", httponly=True, secure=COOKIE_SECURE, samesite="strict")
    _clear_refresh_cookie(response)
    return ok("Logged out successfully")


@router.get("/refresh-token", response_model=Envelope[SessionRead])
def refresh_token(request: Request, service: Service) -> Response:
    try:
        principal, access_token = service.refresh_session(request.cookies.get(REFRESH_COOKIE))
    except TaskTrackError as exc:
        # The offending refresh cookie goes with every failure so clients stop retrying it.
        failure = JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))
        _clear_refresh_cookie(failure)
        return failure
    request.state.principal = principal
    body = Envelope[SessionRead](message="Access token refreshed", data=_session_read(principal))
    response = JSONResponse(content=body.model_dump(mode="json"))
    _set_access_cookie(response, access_token)
    return response


@router.get("/me", response_model=Envelope[SessionRead])
def me(principal: CurrentPrincipal) -> dict[str, object]:
    return ok("Session retrieved successfully", _session_read(principal))


@router.post("/verify-email", response_model=Envelope[UserRead])
def verify_email(payload: TokenRequest, service: Service) -> dict[str, object]:
    user = service.verify_email(payload.token)
    return ok("Email verified successfully", UserRead.model_validate(user))


@router.post(
    "/forgot-password",
    response_model=Envelope[None],
    dependencies=[Depends(auth_rate_limit("forgot-password"))],
)
def forgot_password(payload: ForgotPasswordRequest, service: Service) -> dict[str, object]:
    service.request_password_reset(payload.email)
    return ok("If the email is registered, a reset link has been sent")


@router.post(
    "/reset-password",
    response_model=Envelope[None],
    dependencies=[Depends(auth_rate_limit("reset-password"))],
)
def reset_password(payload: ResetPasswordRequest, service: Service) -> dict[str, object]:
    service.reset_password(payload.token, payload.password)
    return ok("Password reset successfully")


@router.post("/change-email", response_model=Envelope[None])
def change_email(payload: ChangeEmailRequest, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    service.request_email_change(principal, payload.new_email)
    return ok("Confirmation sent to the new email address")


@router.post("/confirm-email-change", response_model=Envelope[UserRead])
def confirm_email_change(payload: TokenRequest, service: Service) -> dict[str, object]:
    user = service.confirm_email_change(payload.token)
    return ok("Email changed successfully", UserRead.model_validate(user))

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from tasktrack.domain.models import Principal, Role
from tasktrack.domain.permissions import require_role
from tasktrack.infra.logging import bind_principal_context
from tasktrack.infra.rate_limit import enforce_auth_rate_limit
from tasktrack.services.identity_service import IdentityService

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_identity_service() -> IdentityService:
    return IdentityService()


def get_current_principal(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
    service: Annotated[IdentityService, Depends(get_identity_service)],
) -> Principal:
    principal = service.authenticate_access_token(token or request.cookies.get(ACCESS_COOKIE))
    request.state.principal = principal
    bind_principal_context(principal.company_id, principal.user_id)
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_roles(*roles: Role) -> Callable[[Principal], Principal]:
    allowed = tuple(roles)

    def _checker(principal: CurrentPrincipal) -> Principal:
        require_role(principal, allowed)
        return principal

    return _checker


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else "unknown"


def auth_rate_limit(scope: str) -> Callable[[Request], None]:
    def _limiter(request: Request) -> None:
        enforce_auth_rate_limit(scope, client_ip(request))

    return _limiter

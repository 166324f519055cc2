from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from hrbac.domain.errors import NotAuthenticatedError, OrgIsolationError
from hrbac.domain.permissions import PERM_GLOBAL_ADMIN, has_permission
from hrbac.infra.auth import decode_access_token
from hrbac.infra.tenant import set_request_context
from hrbac.services.org_guard import Caller, scope_for_caller

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except (jwt.PyJWTError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("org_id"), claims.get("sub"))
    return claims


def get_caller(claims: Annotated[dict[str, Any], Depends(get_current_claims)]) -> Caller:
    try:
        return Caller.from_claims(claims)
    except NotAuthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


def get_effective_org_id(caller: Annotated[Caller, Depends(get_caller)], org_id: str | None = None) -> str:
    try:
        return scope_for_caller(caller, org_id)
    except OrgIsolationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def require_global_admin(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if not caller.is_global_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission: {PERM_GLOBAL_ADMIN}",
        )
    return caller


def require_perm(permission: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return _checker

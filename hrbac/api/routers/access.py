from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, status

from hrbac.api.deps import get_caller, get_effective_org_id
from hrbac.domain.errors import (
    AccessControlError,
    CycleOrOrphanError,
    NotAuthenticatedError,
    PermissionDeniedError,
    ScopeAccessDeniedError,
)
from hrbac.domain.models import AccessCheckRequest, AccessDecisionRead, AccessUserRead
from hrbac.domain.permissions import PERM_USER_MANAGEMENT
from hrbac.infra.audit import set_audit_context
from hrbac.infra.error_sanitizer import sanitize_error
from hrbac.services.authorization_service import AccessDecision, AuthorizationService
from hrbac.services.identity_service import IdentityService
from hrbac.services.org_guard import Caller

router = APIRouter()


def get_authorization_service() -> AuthorizationService:
    return AuthorizationService()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
OrgId = Annotated[str, Depends(get_effective_org_id)]
Service = Annotated[AuthorizationService, Depends(get_authorization_service)]
Identity = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_access_error(exc: AccessControlError) -> NoReturn:
    if isinstance(exc, NotAuthenticatedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": str(exc), "missing_permissions": exc.missing},
        ) from exc
    if isinstance(exc, ScopeAccessDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, CycleOrOrphanError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=sanitize_error(exc),
        ) from exc
    raise exc


def _decision_read(org_id: str, decision: AccessDecision, identity: IdentityService) -> AccessDecisionRead:
    user: AccessUserRead | None = None
    if decision.authenticated and decision.user_id is not None:
        info = identity.get_org_info(org_id)
        user = AccessUserRead(
            id=decision.user_id,
            username=decision.username or "",
            org_id=org_id,
            org_name=info.org_name if info is not None else None,
            root_org_id=info.root_org_id if info is not None else None,
            parent_org_id=info.parent_org_id if info is not None else None,
        )
    return AccessDecisionRead(
        authenticated=decision.authenticated,
        permission_ok=decision.permission_ok,
        missing_permissions=list(decision.missing_permissions),
        scope_ok=decision.scope_ok,
        scope_access_via=decision.scope_access_via,
        scope_access_via_name=decision.scope_access_via_name,
        user=user,
        permissions=list(decision.permissions),
    )


@router.post("/evaluate", response_model=AccessDecisionRead)
def evaluate_access(
    payload: AccessCheckRequest,
    request: Request,
    caller: CurrentCaller,
    org_id: OrgId,
    service: Service,
    identity: Identity,
) -> AccessDecisionRead:
    user_id = payload.user_id or caller.user_id
    if user_id != caller.user_id and PERM_USER_MANAGEMENT not in caller.permissions:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission: {PERM_USER_MANAGEMENT}",
        )

    set_audit_context(
        request,
        action="access.evaluate",
        resource=f"user:{user_id}",
        detail={
            "what": {
                "required_permissions": sorted(payload.required_permissions),
                "target_scope_id": payload.target_scope_id,
                "strict": payload.strict,
            }
        },
    )
    try:
        decision = service.evaluate_access(
            org_id,
            user_id,
            payload.required_permissions,
            target_scope_id=payload.target_scope_id,
            strict=payload.strict,
        )
    except PermissionDeniedError as exc:
        set_audit_context(request, detail={"result": {"missing_permissions": exc.missing}})
        _handle_access_error(exc)
    except (NotAuthenticatedError, ScopeAccessDeniedError, CycleOrOrphanError) as exc:
        _handle_access_error(exc)

    set_audit_context(
        request,
        detail={
            "result": {
                "authenticated": decision.authenticated,
                "permission_ok": decision.permission_ok,
                "missing_permissions": list(decision.missing_permissions),
                "scope_ok": decision.scope_ok,
                "scope_access_via": decision.scope_access_via,
                "scope_access_via_name": decision.scope_access_via_name,
            }
        },
    )
    return _decision_read(org_id, decision, identity)

from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Response, status

from hrbac.api.deps import get_caller, get_effective_org_id, require_perm
from hrbac.domain.errors import AccessControlError, ConflictError, NotAuthenticatedError, NotFoundError
from hrbac.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    OrgCreate,
    OrgRead,
    OrgUpdate,
    RoleRead,
    TokenResponse,
    UserCreate,
    UserRead,
    UserRolesReplaceRequest,
    UserUpdate,
)
from hrbac.domain.permissions import PERM_ORG_MANAGEMENT, PERM_USER_MANAGEMENT
from hrbac.infra.auth import create_access_token
from hrbac.services.identity_service import IdentityService
from hrbac.services.org_guard import Caller

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
OrgId = Annotated[str, Depends(get_effective_org_id)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: AccessControlError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, NotAuthenticatedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


def _visible_org_id(caller: Caller, org_id: str, service: IdentityService) -> str:
    # Org ids outside the caller tenant read as missing, like the other scoped lookups.
    if caller.is_global_admin:
        return org_id
    info = service.get_org_info(org_id)
    if info is None or info.root_org_id != caller.root_org_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="org not found")
    return org_id


@router.post("/orgs", response_model=OrgRead, status_code=status.HTTP_201_CREATED)
def create_org(payload: OrgCreate, service: Service) -> OrgRead:
    try:
        org = service.create_org(payload)
        return OrgRead.model_validate(org)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)


@router.post(
    "/orgs/{org_id}/children",
    response_model=OrgRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ORG_MANAGEMENT))],
)
def create_child_org(org_id: str, payload: OrgCreate, caller: CurrentCaller, service: Service) -> OrgRead:
    parent_id = _visible_org_id(caller, org_id, service)
    try:
        org = service.create_org(payload, parent_org_id=parent_id)
        return OrgRead.model_validate(org)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)


@router.get(
    "/orgs",
    response_model=list[OrgRead],
    dependencies=[Depends(require_perm(PERM_ORG_MANAGEMENT))],
)
def list_orgs(caller: CurrentCaller, service: Service) -> list[OrgRead]:
    orgs = service.list_all_orgs() if caller.is_global_admin else service.list_orgs(caller.root_org_id)
    return [OrgRead.model_validate(item) for item in orgs]


@router.get(
    "/orgs/{org_id}",
    response_model=OrgRead,
    dependencies=[Depends(require_perm(PERM_ORG_MANAGEMENT))],
)
def get_org(org_id: str, caller: CurrentCaller, service: Service) -> OrgRead:
    try:
        org = service.get_org(_visible_org_id(caller, org_id, service))
        return OrgRead.model_validate(org)
    except NotFoundError as exc:
        _handle_identity_error(exc)


@router.patch(
    "/orgs/{org_id}",
    response_model=OrgRead,
    dependencies=[Depends(require_perm(PERM_ORG_MANAGEMENT))],
)
def update_org(org_id: str, payload: OrgUpdate, caller: CurrentCaller, service: Service) -> OrgRead:
    try:
        org = service.update_org(_visible_org_id(caller, org_id, service), payload)
        return OrgRead.model_validate(org)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)


@router.delete(
    "/orgs/{org_id}",
    response_model=OrgRead,
    dependencies=[Depends(require_perm(PERM_ORG_MANAGEMENT))],
)
def deactivate_org(org_id: str, caller: CurrentCaller, service: Service) -> OrgRead:
    try:
        org = service.deactivate_org(_visible_org_id(caller, org_id, service))
        return OrgRead.model_validate(org)
    except NotFoundError as exc:
        _handle_identity_error(exc)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, root_org_id, permissions = service.dev_login(payload.org_id, payload.username, payload.password)
    except NotAuthenticatedError as exc:
        _handle_identity_error(exc)
    token = create_access_token(
        user_id=user.id,
        org_id=user.org_id,
        root_org_id=root_org_id,
        permissions=permissions,
    )
    return TokenResponse(access_token=token, permissions=permissions)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def create_user(payload: UserCreate, org_id: OrgId, service: Service) -> UserRead:
    try:
        user = service.create_user(org_id, payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def list_users(org_id: OrgId, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(org_id)]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def get_user(user_id: str, org_id: OrgId, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(org_id, user_id))
    except NotFoundError as exc:
        _handle_identity_error(exc)


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def update_user(user_id: str, payload: UserUpdate, org_id: OrgId, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.update_user(org_id, user_id, payload))
    except NotFoundError as exc:
        _handle_identity_error(exc)


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def delete_user(user_id: str, org_id: OrgId, service: Service) -> Response:
    try:
        service.delete_user(org_id, user_id)
    except NotFoundError as exc:
        _handle_identity_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/users/{user_id}/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def list_user_roles(user_id: str, org_id: OrgId, service: Service) -> list[RoleRead]:
    try:
        roles = service.registry.list_user_roles(org_id, user_id)
    except NotFoundError as exc:
        _handle_identity_error(exc)
    return [RoleRead.model_validate(item) for item in roles]


@router.put(
    "/users/{user_id}/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def replace_user_roles(
    user_id: str,
    payload: UserRolesReplaceRequest,
    org_id: OrgId,
    service: Service,
) -> list[RoleRead]:
    try:
        roles = service.registry.replace_user_roles(org_id, user_id, payload.role_ids)
    except NotFoundError as exc:
        _handle_identity_error(exc)
    return [RoleRead.model_validate(item) for item in roles]


@router.put(
    "/users/{user_id}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def bind_user_role(user_id: str, role_id: str, org_id: OrgId, service: Service) -> Response:
    try:
        service.registry.bind_user_role(org_id, user_id, role_id)
    except NotFoundError as exc:
        _handle_identity_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/users/{user_id}/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def unbind_user_role(user_id: str, role_id: str, org_id: OrgId, service: Service) -> Response:
    try:
        service.registry.unbind_user_role(org_id, user_id, role_id)
    except NotFoundError as exc:
        _handle_identity_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from hrbac.api.deps import get_caller, get_effective_org_id, require_global_admin, require_perm
from hrbac.domain.errors import (
    AccessControlError,
    ConflictError,
    EditConflictError,
    NotFoundError,
    PermissionDeniedError,
)
from hrbac.domain.models import (
    PermissionCatalogEntry,
    PermissionCreate,
    PermissionMigrationRead,
    PermissionRead,
    PermissionUpdate,
    RoleCreate,
    RolePermissionsReplaceRequest,
    RoleRead,
    RolesMatrixRead,
    RolesMatrixRole,
    RolesMatrixUpdate,
    RoleUpdate,
    UserRolesMatrixUpdate,
)
from hrbac.domain.permissions import (
    PERM_PERMISSION_MANAGEMENT,
    PERM_ROLE_MANAGEMENT,
    PERM_USER_MANAGEMENT,
)
from hrbac.domain.roles_matrix import MatrixRole, MatrixSnapshot
from hrbac.infra.audit import set_audit_context
from hrbac.services.org_guard import Caller
from hrbac.services.registry_service import RegistryService

router = APIRouter()


def get_registry_service() -> RegistryService:
    return RegistryService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
OrgId = Annotated[str, Depends(get_effective_org_id)]
Service = Annotated[RegistryService, Depends(get_registry_service)]

# The permission catalog is shared by every tenant.
CatalogEditor = [Depends(require_perm(PERM_PERMISSION_MANAGEMENT)), Depends(require_global_admin)]


def _handle_rbac_error(exc: AccessControlError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": str(exc), "missing_permissions": exc.missing},
        ) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def _matrix_read(snapshot: MatrixSnapshot, permissions: list[str], user_id: str | None = None) -> RolesMatrixRead:
    return RolesMatrixRead(
        roles=[
            RolesMatrixRole(
                role_id=row.role_id,
                name=row.name,
                permissions=sorted(row.permissions),
                selected=row.selected,
            )
            for row in snapshot.roles
        ],
        permissions=permissions,
        user_id=user_id,
        snapshot_token=snapshot.token or "",
    )


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def create_role(payload: RoleCreate, org_id: OrgId, service: Service) -> RoleRead:
    try:
        return RoleRead.model_validate(service.create_role(org_id, payload))
    except ConflictError as exc:
        _handle_rbac_error(exc)


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def list_roles(org_id: OrgId, service: Service) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in service.list_roles(org_id)]


@router.get(
    "/roles/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def get_role(role_id: str, org_id: OrgId, service: Service) -> RoleRead:
    try:
        return RoleRead.model_validate(service.get_role(org_id, role_id))
    except NotFoundError as exc:
        _handle_rbac_error(exc)


@router.patch(
    "/roles/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def update_role(role_id: str, payload: RoleUpdate, org_id: OrgId, service: Service) -> RoleRead:
    try:
        return RoleRead.model_validate(service.update_role(org_id, role_id, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_rbac_error(exc)


@router.delete(
    "/roles/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def delete_role(role_id: str, org_id: OrgId, service: Service) -> Response:
    try:
        service.delete_role(org_id, role_id)
    except NotFoundError as exc:
        _handle_rbac_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/roles/{role_id}/permissions",
    response_model=list[str],
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def list_role_permissions(role_id: str, org_id: OrgId, service: Service) -> list[str]:
    try:
        return service.list_role_permissions(org_id, role_id)
    except NotFoundError as exc:
        _handle_rbac_error(exc)


@router.put(
    "/roles/{role_id}/permissions",
    response_model=list[str],
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def replace_role_permissions(
    role_id: str,
    payload: RolePermissionsReplaceRequest,
    org_id: OrgId,
    caller: CurrentCaller,
    service: Service,
) -> list[str]:
    try:
        return service.replace_role_permissions(
            org_id,
            role_id,
            payload.permissions,
            allow_global_admin=caller.is_global_admin,
        )
    except (NotFoundError, PermissionDeniedError) as exc:
        _handle_rbac_error(exc)


@router.get(
    "/roles-matrix",
    response_model=RolesMatrixRead,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def get_roles_matrix(org_id: OrgId, service: Service) -> RolesMatrixRead:
    snapshot, permissions = service.get_roles_matrix(org_id)
    return _matrix_read(snapshot, permissions)


@router.put(
    "/roles-matrix",
    response_model=RolesMatrixRead,
    dependencies=[Depends(require_perm(PERM_ROLE_MANAGEMENT))],
)
def save_roles_matrix(
    payload: RolesMatrixUpdate,
    request: Request,
    org_id: OrgId,
    caller: CurrentCaller,
    service: Service,
) -> RolesMatrixRead:
    rows = [
        MatrixRole(role_id=item.role_id, name=item.name, permissions=frozenset(item.permissions))
        for item in payload.roles
    ]
    set_audit_context(
        request,
        action="roles_matrix.save",
        resource=f"org:{org_id}",
        detail={"what": {"roles": sorted(row.name for row in rows)}},
    )
    try:
        service.save_roles_matrix(
            org_id,
            rows,
            snapshot_token=payload.snapshot_token,
            allow_global_admin=caller.is_global_admin,
        )
    except (NotFoundError, ConflictError, PermissionDeniedError) as exc:
        _handle_rbac_error(exc)
    snapshot, permissions = service.get_roles_matrix(org_id)
    return _matrix_read(snapshot, permissions)


@router.get(
    "/users/{user_id}/roles-matrix",
    response_model=RolesMatrixRead,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def get_user_roles_matrix(user_id: str, org_id: OrgId, service: Service) -> RolesMatrixRead:
    try:
        snapshot, permissions = service.get_roles_matrix(org_id, user_id)
    except NotFoundError as exc:
        _handle_rbac_error(exc)
    return _matrix_read(snapshot, permissions, user_id)


@router.put(
    "/users/{user_id}/roles-matrix",
    response_model=RolesMatrixRead,
    dependencies=[Depends(require_perm(PERM_USER_MANAGEMENT))],
)
def save_user_roles_matrix(
    user_id: str,
    payload: UserRolesMatrixUpdate,
    org_id: OrgId,
    service: Service,
) -> RolesMatrixRead:
    try:
        service.save_user_roles_matrix(org_id, user_id, payload.role_ids, snapshot_token=payload.snapshot_token)
        snapshot, permissions = service.get_roles_matrix(org_id, user_id)
    except (NotFoundError, EditConflictError) as exc:
        _handle_rbac_error(exc)
    return _matrix_read(snapshot, permissions, user_id)


@router.post(
    "/permissions",
    response_model=PermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=CatalogEditor,
)
def create_permission(payload: PermissionCreate, service: Service) -> PermissionRead:
    try:
        return PermissionRead.model_validate(service.create_permission(payload))
    except ConflictError as exc:
        _handle_rbac_error(exc)


@router.get(
    "/permissions",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_perm(PERM_PERMISSION_MANAGEMENT))],
)
def list_permissions(service: Service) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in service.list_permissions()]


@router.get(
    "/permissions/catalog",
    response_model=list[PermissionCatalogEntry],
    dependencies=[Depends(require_perm(PERM_PERMISSION_MANAGEMENT))],
)
def list_permission_catalog(service: Service) -> list[PermissionCatalogEntry]:
    return service.list_permission_catalog()


@router.post(
    "/permissions/migrate",
    response_model=PermissionMigrationRead,
    dependencies=CatalogEditor,
)
def migrate_config_permissions(request: Request, service: Service) -> PermissionMigrationRead:
    try:
        result = service.migrate_config_permissions()
    except ConflictError as exc:
        _handle_rbac_error(exc)
    set_audit_context(
        request,
        action="permissions.migrate",
        resource="permissions",
        detail={"what": {"created": result.created, "skipped": result.skipped}},
    )
    return PermissionMigrationRead(created=result.created, skipped=result.skipped, message=result.message)


@router.get(
    "/permissions/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_perm(PERM_PERMISSION_MANAGEMENT))],
)
def get_permission(permission_id: str, service: Service) -> PermissionRead:
    try:
        return PermissionRead.model_validate(service.get_permission(permission_id))
    except NotFoundError as exc:
        _handle_rbac_error(exc)


@router.patch(
    "/permissions/{permission_id}",
    response_model=PermissionRead,
    dependencies=CatalogEditor,
)
def update_permission(
    permission_id: str,
    payload: PermissionUpdate,
    caller: CurrentCaller,
    service: Service,
) -> PermissionRead:
    try:
        permission = service.update_permission(
            permission_id,
            payload,
            allow_global_admin=caller.is_global_admin,
        )
        return PermissionRead.model_validate(permission)
    except (NotFoundError, ConflictError, PermissionDeniedError) as exc:
        _handle_rbac_error(exc)


@router.delete(
    "/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=CatalogEditor,
)
def delete_permission(permission_id: str, caller: CurrentCaller, service: Service) -> Response:
    try:
        service.delete_permission(permission_id, allow_global_admin=caller.is_global_admin)
    except (NotFoundError, ConflictError, PermissionDeniedError) as exc:
        _handle_rbac_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

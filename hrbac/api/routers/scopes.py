from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from hrbac.api.deps import get_caller, get_effective_org_id, require_perm
from hrbac.domain.errors import (
    AccessControlError,
    ConflictError,
    CycleOrOrphanError,
    NotFoundError,
    PersistenceError,
)
from hrbac.domain.models import (
    OrgScopeTree,
    ScopeCreate,
    ScopeDeleteRead,
    ScopeLabelRead,
    ScopeLabelsBatchUpsert,
    ScopeLabelUpsert,
    ScopeRead,
    ScopeTreeNode,
    ScopeUpdate,
    UserScopeAssignmentRead,
    UserScopeAssignRequest,
    UserScopesReplaceRequest,
)
from hrbac.domain.permissions import PERM_SCOPE_MANAGEMENT
from hrbac.infra.audit import set_audit_context
from hrbac.infra.error_sanitizer import sanitize_error
from hrbac.services.org_guard import Caller
from hrbac.services.scope_label_service import ScopeLabelService
from hrbac.services.scope_service import ScopeService
from hrbac.services.user_scope_service import UserScopeService

router = APIRouter()


def get_scope_service() -> ScopeService:
    return ScopeService()


def get_user_scope_service() -> UserScopeService:
    return UserScopeService()


def get_scope_label_service() -> ScopeLabelService:
    return ScopeLabelService()


CurrentCaller = Annotated[Caller, Depends(get_caller)]
OrgId = Annotated[str, Depends(get_effective_org_id)]
Service = Annotated[ScopeService, Depends(get_scope_service)]
AssignmentService = Annotated[UserScopeService, Depends(get_user_scope_service)]
LabelService = Annotated[ScopeLabelService, Depends(get_scope_label_service)]

ScopeManager = [Depends(require_perm(PERM_SCOPE_MANAGEMENT))]


def _handle_scope_error(exc: AccessControlError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, (CycleOrOrphanError, PersistenceError)):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=sanitize_error(exc),
        ) from exc
    raise exc


@router.post(
    "",
    response_model=ScopeRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=ScopeManager,
)
def create_scope(payload: ScopeCreate, org_id: OrgId, service: Service) -> ScopeRead:
    try:
        return ScopeRead.model_validate(service.create_scope(org_id, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_scope_error(exc)


@router.get("", response_model=list[ScopeRead], dependencies=ScopeManager)
def list_scopes(org_id: OrgId, service: Service) -> list[ScopeRead]:
    return [ScopeRead.model_validate(item) for item in service.list_scopes(org_id)]


@router.get("/tree", response_model=list[ScopeTreeNode], dependencies=ScopeManager)
def list_tree(org_id: OrgId, service: Service) -> list[ScopeTreeNode]:
    try:
        return service.list_tree(org_id)
    except CycleOrOrphanError as exc:
        _handle_scope_error(exc)


@router.get("/tree/all", response_model=list[OrgScopeTree], dependencies=ScopeManager)
def list_all_trees(caller: CurrentCaller, service: Service) -> list[OrgScopeTree]:
    if not caller.is_global_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="global admin required")
    try:
        return service.list_all_trees()
    except CycleOrOrphanError as exc:
        _handle_scope_error(exc)


@router.get("/labels", response_model=list[ScopeLabelRead], dependencies=ScopeManager)
def list_scope_labels(org_id: OrgId, service: LabelService) -> list[ScopeLabelRead]:
    return service.get_scope_labels_with_defaults(org_id)


@router.put("/labels", response_model=list[ScopeLabelRead], dependencies=ScopeManager)
def batch_upsert_scope_labels(
    payload: ScopeLabelsBatchUpsert,
    request: Request,
    org_id: OrgId,
    service: LabelService,
) -> list[ScopeLabelRead]:
    try:
        labels = service.batch_upsert_scope_labels(org_id, payload.labels)
    except (NotFoundError, ConflictError) as exc:
        _handle_scope_error(exc)
    set_audit_context(
        request,
        action="scope_labels.update",
        resource=f"org:{org_id}",
        detail={"what": {"levels": [item.level for item in labels]}},
    )
    return labels


@router.put("/labels/{level}", response_model=ScopeLabelRead, dependencies=ScopeManager)
def upsert_scope_label(level: int, payload: ScopeLabelUpsert, org_id: OrgId, service: LabelService) -> ScopeLabelRead:
    try:
        return service.upsert_scope_label(org_id, level, payload.label)
    except (NotFoundError, ConflictError) as exc:
        _handle_scope_error(exc)


@router.delete("/labels/{level}", status_code=status.HTTP_204_NO_CONTENT, dependencies=ScopeManager)
def delete_scope_label(level: int, org_id: OrgId, service: LabelService) -> Response:
    try:
        service.delete_scope_label(org_id, level)
    except NotFoundError as exc:
        _handle_scope_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{scope_id}", response_model=ScopeRead, dependencies=ScopeManager)
def get_scope(scope_id: str, org_id: OrgId, service: Service) -> ScopeRead:
    try:
        return ScopeRead.model_validate(service.get_scope(org_id, scope_id))
    except NotFoundError as exc:
        _handle_scope_error(exc)


@router.get("/{scope_id}/ancestors", response_model=list[ScopeRead], dependencies=ScopeManager)
def list_ancestors(scope_id: str, org_id: OrgId, service: Service) -> list[ScopeRead]:
    try:
        return [ScopeRead.model_validate(item) for item in service.ancestors(org_id, scope_id)]
    except (NotFoundError, CycleOrOrphanError) as exc:
        _handle_scope_error(exc)


@router.get(
    "/{scope_id}/assignments",
    response_model=list[UserScopeAssignmentRead],
    dependencies=ScopeManager,
)
def list_scope_users(scope_id: str, org_id: OrgId, service: AssignmentService) -> list[UserScopeAssignmentRead]:
    try:
        return [UserScopeAssignmentRead.model_validate(item) for item in service.get_users_by_scope(org_id, scope_id)]
    except NotFoundError as exc:
        _handle_scope_error(exc)


@router.patch("/{scope_id}", response_model=ScopeRead, dependencies=ScopeManager)
def update_scope(scope_id: str, payload: ScopeUpdate, org_id: OrgId, service: Service) -> ScopeRead:
    try:
        return ScopeRead.model_validate(service.update_scope(org_id, scope_id, payload))
    except (NotFoundError, ConflictError, CycleOrOrphanError) as exc:
        _handle_scope_error(exc)


@router.delete("/{scope_id}", response_model=ScopeDeleteRead, dependencies=ScopeManager)
def delete_scope(scope_id: str, request: Request, org_id: OrgId, service: Service) -> ScopeDeleteRead:
    try:
        result = service.delete_scope(org_id, scope_id)
    except (NotFoundError, CycleOrOrphanError, PersistenceError) as exc:
        _handle_scope_error(exc)
    set_audit_context(
        request,
        action="scope.delete",
        resource=f"scope:{scope_id}",
        detail={"what": result},
    )
    return ScopeDeleteRead(**result)


@router.get(
    "/users/{user_id}/assignments",
    response_model=list[UserScopeAssignmentRead],
    dependencies=ScopeManager,
)
def list_user_scopes(user_id: str, org_id: OrgId, service: AssignmentService) -> list[UserScopeAssignmentRead]:
    try:
        return [UserScopeAssignmentRead.model_validate(item) for item in service.list_user_scopes(org_id, user_id)]
    except NotFoundError as exc:
        _handle_scope_error(exc)


@router.post(
    "/users/{user_id}/assignments",
    response_model=UserScopeAssignmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=ScopeManager,
)
def assign_scope(
    user_id: str,
    payload: UserScopeAssignRequest,
    org_id: OrgId,
    service: AssignmentService,
) -> UserScopeAssignmentRead:
    try:
        return UserScopeAssignmentRead.model_validate(service.assign_scope(org_id, user_id, payload.scope_id))
    except NotFoundError as exc:
        _handle_scope_error(exc)


@router.put(
    "/users/{user_id}/assignments",
    response_model=list[UserScopeAssignmentRead],
    dependencies=ScopeManager,
)
def replace_user_scopes(
    user_id: str,
    payload: UserScopesReplaceRequest,
    request: Request,
    org_id: OrgId,
    service: AssignmentService,
) -> list[UserScopeAssignmentRead]:
    try:
        result = service.replace_user_scopes(org_id, user_id, payload.scope_ids)
    except NotFoundError as exc:
        _handle_scope_error(exc)
    set_audit_context(
        request,
        action="user_scopes.replace",
        resource=f"user:{user_id}",
        detail={"what": {"added": result["added"], "removed": result["removed"]}},
    )
    return [UserScopeAssignmentRead.model_validate(item) for item in result["assignments"]]


@router.delete(
    "/users/{user_id}/assignments/{scope_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=ScopeManager,
)
def revoke_scope(user_id: str, scope_id: str, org_id: OrgId, service: AssignmentService) -> Response:
    try:
        service.revoke_scope(org_id, user_id, scope_id)
    except NotFoundError as exc:
        _handle_scope_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

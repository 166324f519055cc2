from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from sqlmodel import select

from hrbac.domain.errors import NotAuthenticatedError, PermissionDeniedError, ScopeAccessDeniedError
from hrbac.domain.models import Org, User
from hrbac.domain.permissions import is_global_admin
from hrbac.infra.db import open_session
from hrbac.services.registry_service import RegistryService, normalize_names
from hrbac.services.scope_service import ScopeService
from hrbac.services.user_scope_service import UserScopeService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    authenticated: bool
    permission_ok: bool
    missing_permissions: tuple[str, ...] = ()
    scope_ok: bool | None = None
    scope_access_via: str | None = None
    scope_access_via_name: str | None = None
    user_id: str | None = None
    username: str | None = None
    permissions: tuple[str, ...] = ()


class AuthorizationService:
    """Combines role permissions and scope grants into a single access decision.

    Every call reads fresh rows; nothing is cached between evaluations.
    """

    def __init__(
        self,
        registry: RegistryService | None = None,
        scopes: ScopeService | None = None,
        user_scopes: UserScopeService | None = None,
    ) -> None:
        self.registry = registry or RegistryService()
        self.scopes = scopes or ScopeService()
        self.user_scopes = user_scopes or UserScopeService()

    def _active_user(self, org_id: str, user_id: str) -> User | None:
        with open_session() as session:
            org = session.get(Org, org_id)
            if org is None or not org.active:
                return None
            statement = select(User).where(User.org_id == org_id).where(User.id == user_id)
            user = session.exec(statement).first()
            if user is None or not user.is_active:
                return None
            return user

    def evaluate_access(
        self,
        org_id: str,
        user_id: str,
        required_permissions: Iterable[str],
        target_scope_id: str | None = None,
        strict: bool = False,
    ) -> AccessDecision:
        required = sorted(normalize_names(required_permissions))
        user = self._active_user(org_id, user_id)
        if user is None:
            if strict:
                raise NotAuthenticatedError("user is not an active identity")
            return AccessDecision(
                authenticated=False,
                permission_ok=False,
                missing_permissions=tuple(required),
            )

        effective = self.registry.effective_permissions(org_id, user_id)
        missing = tuple(name for name in required if name not in effective)

        scope_ok: bool | None = None
        scope_access_via: str | None = None
        scope_access_via_name: str | None = None
        if target_scope_id is not None:
            granted = self.user_scopes.assigned_scope_ids(org_id, user_id)
            tree = self.scopes.load_tree(org_id)
            scope_access_via = tree.closest_granted(target_scope_id, granted)
            scope_ok = scope_access_via is not None
            if scope_access_via is not None:
                scope_access_via_name = self.scopes.get_scope(org_id, scope_access_via).name
            if is_global_admin(effective):
                scope_ok = True

        decision = AccessDecision(
            authenticated=True,
            permission_ok=not missing,
            missing_permissions=missing,
            scope_ok=scope_ok,
            scope_access_via=scope_access_via,
            scope_access_via_name=scope_access_via_name,
            user_id=user.id,
            username=user.username,
            permissions=tuple(sorted(effective)),
        )

        if strict:
            if missing:
                logger.info("access denied", user_id=user_id, missing_permissions=list(missing))
                raise PermissionDeniedError(missing)
            if scope_ok is False:
                logger.info("scope access denied", user_id=user_id, target_scope_id=target_scope_id)
                raise ScopeAccessDeniedError(target_scope_id or "")
        return decision

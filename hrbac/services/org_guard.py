from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from hrbac.domain.errors import NotAuthenticatedError, OrgIsolationError
from hrbac.domain.permissions import is_global_admin


@dataclass(frozen=True)
class Caller:
    user_id: str
    org_id: str
    root_org_id: str
    permissions: frozenset[str] = frozenset()

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> Caller:
        user_id = claims.get("sub")
        org_id = claims.get("org_id")
        if not isinstance(user_id, str) or not isinstance(org_id, str):
            raise NotAuthenticatedError("token does not identify a caller")
        root_org_id = claims.get("root_org_id")
        raw_permissions = claims.get("permissions", [])
        permissions: Iterable[str] = raw_permissions if isinstance(raw_permissions, list) else []
        return cls(
            user_id=user_id,
            org_id=org_id,
            root_org_id=root_org_id if isinstance(root_org_id, str) else org_id,
            permissions=frozenset(str(item) for item in permissions),
        )

    @property
    def is_global_admin(self) -> bool:
        return is_global_admin(self.permissions)


def scope_for_caller(caller: Caller, requested_org_id: str | None = None) -> str:
    requested = requested_org_id.strip() if requested_org_id else None
    if not requested:
        return caller.org_id
    if caller.is_global_admin:
        return requested
    if requested not in {caller.org_id, caller.root_org_id}:
        raise OrgIsolationError(requested)
    return requested

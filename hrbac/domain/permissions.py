from __future__ import annotations

from collections.abc import Iterable
from typing import Any

PERM_GLOBAL_ADMIN = "org_global_admin"
PERM_ORG_MANAGEMENT = "org_management"
PERM_USER_MANAGEMENT = "admin_user_management"
PERM_ROLE_MANAGEMENT = "admin_role_management"
PERM_PERMISSION_MANAGEMENT = "admin_permission_management"
PERM_SCOPE_MANAGEMENT = "admin_scope_hierarchy_management"

# Catalog entries only a global admin may rename or delete.
RESERVED_PERMISSION_NAMES = frozenset({PERM_GLOBAL_ADMIN})

DEFAULT_PERMISSION_NAMES = [
    PERM_ORG_MANAGEMENT,
    PERM_USER_MANAGEMENT,
    PERM_ROLE_MANAGEMENT,
    PERM_PERMISSION_MANAGEMENT,
    PERM_SCOPE_MANAGEMENT,
]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions


def is_global_admin(permissions: Iterable[str]) -> bool:
    return PERM_GLOBAL_ADMIN in set(permissions)

from __future__ import annotations

from collections.abc import Iterable


class AccessControlError(Exception):
    pass


class NotFoundError(AccessControlError):
    def __init__(self, entity: str, message: str | None = None) -> None:
        self.entity = entity
        super().__init__(message or f"{entity} not found")


class ConflictError(AccessControlError):
    pass


class NotAuthenticatedError(AccessControlError):
    pass


class PermissionDeniedError(AccessControlError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(set(missing))
        super().__init__(f"missing permissions: {', '.join(self.missing)}")


class ScopeAccessDeniedError(AccessControlError):
    def __init__(self, target_scope_id: str) -> None:
        self.target_scope_id = target_scope_id
        super().__init__(f"no access to scope {target_scope_id}")


class OrgIsolationError(AccessControlError):
    def __init__(self, requested_org_id: str) -> None:
        self.requested_org_id = requested_org_id
        super().__init__("org is outside of caller tenant")


class CycleOrOrphanError(AccessControlError):
    """Scope tree integrity violation: a cycle, a duplicate id or a dangling parent."""

    def __init__(self, scope_id: str, reason: str) -> None:
        self.scope_id = scope_id
        self.reason = reason
        super().__init__(f"scope {scope_id}: {reason}")


class EditConflictError(ConflictError):
    pass


class MatrixStateError(ConflictError):
    pass


class PersistenceError(AccessControlError):
    pass

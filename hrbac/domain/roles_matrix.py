from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum

from hrbac.domain.errors import ConflictError, MatrixStateError, NotFoundError


class MatrixState(StrEnum):
    VIEWING = "VIEWING"
    EDITING = "EDITING"


ALLOWED_TRANSITIONS: dict[MatrixState, set[MatrixState]] = {
    MatrixState.VIEWING: {MatrixState.EDITING},
    MatrixState.EDITING: {MatrixState.VIEWING},
}


def can_transition(source: MatrixState, target: MatrixState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


class MatrixMode(StrEnum):
    ROLE_PERMISSIONS = "role_permissions"
    USER_ROLES = "user_roles"


@dataclass(frozen=True)
class MatrixRole:
    name: str
    permissions: frozenset[str] = frozenset()
    role_id: str | None = None
    selected: bool = False


@dataclass(frozen=True)
class MatrixSnapshot:
    roles: tuple[MatrixRole, ...]
    token: str | None = None


RolePermissionsCommit = Callable[[list[MatrixRole], str | None], MatrixSnapshot]
UserRolesCommit = Callable[[list[str], str | None], str | None]


class RolesMatrix:
    """Viewing/Editing workflow over a role x permission grid.

    The committed snapshot is never mutated in place. ``begin_edit`` copies it
    into a working list; ``save`` pushes a full replacement through the commit
    callable and only then swaps the snapshot, ``cancel`` drops the working
    list. In user mode the grid is read-only and the ``selected`` flags mark
    which roles the user holds.
    """

    def __init__(
        self,
        snapshot: MatrixSnapshot,
        permission_names: Iterable[str],
        *,
        mode: MatrixMode = MatrixMode.ROLE_PERMISSIONS,
    ) -> None:
        self._snapshot = snapshot
        self._working: list[MatrixRole] | None = None
        self.permission_names = tuple(sorted(set(permission_names)))
        self.mode = mode
        self.state = MatrixState.VIEWING

    @property
    def snapshot(self) -> MatrixSnapshot:
        return self._snapshot

    @property
    def roles(self) -> tuple[MatrixRole, ...]:
        if self._working is not None:
            return tuple(self._working)
        return self._snapshot.roles

    def _transition(self, target: MatrixState) -> None:
        if not can_transition(self.state, target):
            raise MatrixStateError(f"roles matrix cannot move from {self.state} to {target}")
        self.state = target

    def _editing_rows(self) -> list[MatrixRole]:
        if self.state != MatrixState.EDITING or self._working is None:
            raise MatrixStateError("roles matrix is not in edit mode")
        return self._working

    def _require_mode(self, mode: MatrixMode) -> None:
        if self.mode != mode:
            raise MatrixStateError(f"operation not available in {self.mode} mode")

    def _position(self, rows: Sequence[MatrixRole], role_name: str) -> int:
        for idx, row in enumerate(rows):
            if row.name == role_name:
                return idx
        raise NotFoundError("role")

    def begin_edit(self) -> None:
        self._transition(MatrixState.EDITING)
        self._working = list(self._snapshot.roles)

    def toggle_permission(self, role_name: str, permission: str) -> bool:
        self._require_mode(MatrixMode.ROLE_PERMISSIONS)
        rows = self._editing_rows()
        if permission not in self.permission_names:
            raise NotFoundError("permission")
        idx = self._position(rows, role_name)
        row = rows[idx]
        if permission in row.permissions:
            rows[idx] = replace(row, permissions=row.permissions - {permission})
            return False
        rows[idx] = replace(row, permissions=row.permissions | {permission})
        return True

    def toggle_role(self, role_name: str) -> bool:
        self._require_mode(MatrixMode.USER_ROLES)
        rows = self._editing_rows()
        idx = self._position(rows, role_name)
        rows[idx] = replace(rows[idx], selected=not rows[idx].selected)
        return rows[idx].selected

    def add_role(self, name: str) -> MatrixRole:
        self._require_mode(MatrixMode.ROLE_PERMISSIONS)
        rows = self._editing_rows()
        role_name = name.strip()
        if not role_name:
            raise ConflictError("role name is required")
        if any(row.name == role_name for row in rows):
            raise ConflictError("role name already exists in org")
        role = MatrixRole(name=role_name)
        rows.append(role)
        return role

    def touched_roles(self) -> list[MatrixRole]:
        if self._working is None:
            return []
        committed = {row.name: row for row in self._snapshot.roles}
        return [
            row
            for row in self._working
            if row.role_id is None or committed.get(row.name) != row
        ]

    def selected_role_ids(self) -> list[str]:
        return sorted(row.role_id for row in self.roles if row.selected and row.role_id is not None)

    def is_dirty(self) -> bool:
        return bool(self.touched_roles())

    def save(self, commit: RolePermissionsCommit | UserRolesCommit) -> None:
        """Commit the working copy; state stays EDITING if ``commit`` raises."""
        rows = self._editing_rows()
        if self.mode == MatrixMode.ROLE_PERMISSIONS:
            touched = self.touched_roles()
            if touched:
                self._snapshot = commit(touched, self._snapshot.token)
        elif self.is_dirty():
            token = commit(self.selected_role_ids(), self._snapshot.token)
            self._snapshot = MatrixSnapshot(roles=tuple(rows), token=token or self._snapshot.token)
        self._working = None
        self._transition(MatrixState.VIEWING)

    def cancel(self) -> None:
        self._editing_rows()
        self._working = None
        self._transition(MatrixState.VIEWING)

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from hrbac.domain.errors import ConflictError, EditConflictError, NotFoundError, PermissionDeniedError
from hrbac.domain.models import (
    Permission,
    PermissionCatalogEntry,
    PermissionCreate,
    PermissionSource,
    PermissionUpdate,
    Role,
    RoleCreate,
    RolePermission,
    RoleUpdate,
    User,
    UserRole,
)
from hrbac.domain.permissions import PERM_GLOBAL_ADMIN, RESERVED_PERMISSION_NAMES
from hrbac.domain.roles_matrix import (
    MatrixMode,
    MatrixRole,
    MatrixSnapshot,
    RolePermissionsCommit,
    RolesMatrix,
    UserRolesCommit,
)
from hrbac.infra.db import open_session

logger = structlog.get_logger(__name__)

APP_PERMISSIONS_ENV = "HRBAC_APP_PERMISSIONS"
NO_PERMISSIONS_TO_MIGRATE = "No permissions to migrate"


def normalize_names(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in names:
        if isinstance(item, str) and item.strip():
            seen.setdefault(item.strip(), None)
    return list(seen)


def configured_app_permissions() -> list[str]:
    return normalize_names(os.getenv(APP_PERMISSIONS_ENV, "").split(","))


def ensure_permissions(session: Session, names: Iterable[str]) -> dict[str, Permission]:
    wanted = normalize_names(names)
    existing = session.exec(select(Permission).where(col(Permission.name).in_(wanted))).all()
    by_name = {item.name: item for item in existing}
    for name in wanted:
        if name in by_name:
            continue
        permission = Permission(name=name, description=f"built-in permission {name}")
        session.add(permission)
        by_name[name] = permission
    session.flush()
    return by_name


@dataclass(frozen=True)
class MigrationResult:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    message: str | None = None


class RegistryService:
    def _session(self) -> Session:
        return open_session()

    def _get_scoped_user(self, session: Session, org_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.org_id == org_id).where(User.id == user_id)
        return session.exec(statement).first()

    def _get_scoped_role(self, session: Session, org_id: str, role_id: str) -> Role | None:
        statement = select(Role).where(Role.org_id == org_id).where(Role.id == role_id)
        return session.exec(statement).first()

    def _resolve_permissions(self, session: Session, names: Iterable[str]) -> list[Permission]:
        wanted = normalize_names(names)
        if not wanted:
            return []
        found = list(session.exec(select(Permission).where(col(Permission.name).in_(wanted))).all())
        missing = sorted(set(wanted) - {item.name for item in found})
        if missing:
            raise NotFoundError("permission", f"permission not found: {', '.join(missing)}")
        return found

    def _role_permission_names(self, session: Session, role_id: str) -> set[str]:
        statement = (
            select(Permission.name)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
        )
        return set(session.exec(statement).all())

    def _write_role_permissions(
        self,
        session: Session,
        role: Role,
        names: Iterable[str],
        *,
        allow_global_admin: bool,
    ) -> list[str]:
        permissions = self._resolve_permissions(session, names)
        current = self._role_permission_names(session, role.id)
        wanted = {item.name for item in permissions}
        if PERM_GLOBAL_ADMIN in wanted - current and not allow_global_admin:
            raise PermissionDeniedError([PERM_GLOBAL_ADMIN])
        links = session.exec(select(RolePermission).where(RolePermission.role_id == role.id)).all()
        for link in links:
            session.delete(link)
        session.flush()
        for permission in permissions:
            session.add(RolePermission(role_id=role.id, permission_id=permission.id))
        return sorted(wanted)

    def effective_permissions(self, org_id: str, user_id: str) -> set[str]:
        with self._session() as session:
            statement = (
                select(Permission.name)
                .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
                .join(UserRole, col(UserRole.role_id) == col(RolePermission.role_id))
                .where(UserRole.org_id == org_id)
                .where(UserRole.user_id == user_id)
            )
            return set(session.exec(statement).all())

    def create_permission(self, payload: PermissionCreate) -> Permission:
        name = payload.name.strip()
        if not name:
            raise ConflictError("permission name is required")
        with self._session() as session:
            permission = Permission(name=name, description=payload.description or "")
            session.add(permission)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permission name already exists") from exc
            session.refresh(permission)
            return permission

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            return list(session.exec(select(Permission).order_by(col(Permission.name))).all())

    def get_permission(self, permission_id: str) -> Permission:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission")
            return permission

    def update_permission(
        self,
        permission_id: str,
        payload: PermissionUpdate,
        *,
        allow_global_admin: bool = False,
    ) -> Permission:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission")
            if payload.name is not None and payload.name.strip():
                new_name = payload.name.strip()
                touched = {permission.name, new_name} & RESERVED_PERMISSION_NAMES
                if new_name != permission.name and touched and not allow_global_admin:
                    raise PermissionDeniedError([PERM_GLOBAL_ADMIN])
                permission.name = new_name
            if payload.description is not None:
                permission.description = payload.description
            session.add(permission)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permission name already exists") from exc
            session.refresh(permission)
            return permission

    def delete_permission(self, permission_id: str, *, allow_global_admin: bool = False) -> None:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission")
            if permission.name in RESERVED_PERMISSION_NAMES and not allow_global_admin:
                raise PermissionDeniedError([PERM_GLOBAL_ADMIN])
            in_use = session.exec(
                select(RolePermission.role_id).where(RolePermission.permission_id == permission_id)
            ).first()
            if in_use is not None:
                raise ConflictError("permission is assigned to roles")
            session.delete(permission)
            session.commit()

    def list_permission_catalog(self, config_names: Iterable[str] | None = None) -> list[PermissionCatalogEntry]:
        declared = normalize_names(config_names) if config_names is not None else configured_app_permissions()
        entries: dict[str, PermissionCatalogEntry] = {
            name: PermissionCatalogEntry(name=name, description="", source=PermissionSource.CONFIG)
            for name in declared
        }
        for permission in self.list_permissions():
            entries[permission.name] = PermissionCatalogEntry(
                id=permission.id,
                name=permission.name,
                description=permission.description,
                source=PermissionSource.DATABASE,
            )
        return [entries[name] for name in sorted(entries)]

    def migrate_config_permissions(self, config_names: Iterable[str] | None = None) -> MigrationResult:
        names = normalize_names(config_names) if config_names is not None else configured_app_permissions()
        if not names:
            return MigrationResult(message=NO_PERMISSIONS_TO_MIGRATE)

        with self._session() as session:
            existing = set(session.exec(select(Permission.name).where(col(Permission.name).in_(names))).all())
            created: list[str] = []
            skipped: list[str] = []
            for name in names:
                if name in existing:
                    skipped.append(name)
                    continue
                session.add(Permission(name=name, description=""))
                created.append(name)
            if created:
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise ConflictError("permissions changed during migration, retry") from exc

        logger.info("config permissions migrated", created=created, skipped=skipped)
        return MigrationResult(created=created, skipped=skipped)

    def create_role(self, org_id: str, payload: RoleCreate) -> Role:
        with self._session() as session:
            role = Role(org_id=org_id, name=payload.name.strip(), description=payload.description)
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in org") from exc
            session.refresh(role)
            return role

    def list_roles(self, org_id: str) -> list[Role]:
        with self._session() as session:
            statement = select(Role).where(Role.org_id == org_id).order_by(col(Role.name))
            return list(session.exec(statement).all())

    def get_role(self, org_id: str, role_id: str) -> Role:
        with self._session() as session:
            role = self._get_scoped_role(session, org_id, role_id)
            if role is None:
                raise NotFoundError("role")
            return role

    def update_role(self, org_id: str, role_id: str, payload: RoleUpdate) -> Role:
        with self._session() as session:
            role = self._get_scoped_role(session, org_id, role_id)
            if role is None:
                raise NotFoundError("role")
            if payload.name is not None and payload.name.strip():
                role.name = payload.name.strip()
            if payload.description is not None:
                role.description = payload.description
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in org") from exc
            session.refresh(role)
            return role

    def delete_role(self, org_id: str, role_id: str) -> None:
        with self._session() as session:
            role = self._get_scoped_role(session, org_id, role_id)
            if role is None:
                raise NotFoundError("role")
            for link in session.exec(select(RolePermission).where(RolePermission.role_id == role_id)).all():
                session.delete(link)
            statement = select(UserRole).where(UserRole.org_id == org_id).where(UserRole.role_id == role_id)
            for user_role in session.exec(statement).all():
                session.delete(user_role)
            session.flush()
            session.delete(role)
            session.commit()

    def list_role_permissions(self, org_id: str, role_id: str) -> list[str]:
        with self._session() as session:
            if self._get_scoped_role(session, org_id, role_id) is None:
                raise NotFoundError("role")
            return sorted(self._role_permission_names(session, role_id))

    def replace_role_permissions(
        self,
        org_id: str,
        role_id: str,
        names: Iterable[str],
        *,
        allow_global_admin: bool = False,
    ) -> list[str]:
        with self._session() as session:
            role = self._get_scoped_role(session, org_id, role_id)
            if role is None:
                raise NotFoundError("role")
            result = self._write_role_permissions(session, role, names, allow_global_admin=allow_global_admin)
            session.commit()
            return result

    def list_user_roles(self, org_id: str, user_id: str) -> list[Role]:
        with self._session() as session:
            if self._get_scoped_user(session, org_id, user_id) is None:
                raise NotFoundError("user")
            statement = (
                select(Role)
                .join(UserRole, col(UserRole.role_id) == col(Role.id))
                .where(UserRole.org_id == org_id)
                .where(UserRole.user_id == user_id)
                .order_by(col(Role.name))
            )
            return list(session.exec(statement).all())

    def bind_user_role(self, org_id: str, user_id: str, role_id: str) -> None:
        with self._session() as session:
            user = self._get_scoped_user(session, org_id, user_id)
            role = self._get_scoped_role(session, org_id, role_id)
            if user is None or role is None:
                raise NotFoundError("user or role")
            if session.get(UserRole, (org_id, user_id, role_id)) is not None:
                return
            session.add(UserRole(org_id=org_id, user_id=user_id, role_id=role_id))
            session.commit()

    def unbind_user_role(self, org_id: str, user_id: str, role_id: str) -> None:
        with self._session() as session:
            user = self._get_scoped_user(session, org_id, user_id)
            role = self._get_scoped_role(session, org_id, role_id)
            if user is None or role is None:
                raise NotFoundError("user or role")
            user_role = session.get(UserRole, (org_id, user_id, role_id))
            if user_role is None:
                return
            session.delete(user_role)
            session.commit()

    def _write_user_roles(self, session: Session, org_id: str, user_id: str, role_ids: Iterable[str]) -> None:
        if self._get_scoped_user(session, org_id, user_id) is None:
            raise NotFoundError("user")
        wanted = set(normalize_names(role_ids))
        statement = select(Role.id).where(Role.org_id == org_id).where(col(Role.id).in_(sorted(wanted)))
        scoped = set(session.exec(statement).all())
        missing = sorted(wanted - scoped)
        if missing:
            raise NotFoundError("role", f"role not found: {', '.join(missing)}")
        current = session.exec(
            select(UserRole).where(UserRole.org_id == org_id).where(UserRole.user_id == user_id)
        ).all()
        for link in current:
            if link.role_id not in wanted:
                session.delete(link)
        held = {link.role_id for link in current}
        for role_id in sorted(wanted - held):
            session.add(UserRole(org_id=org_id, user_id=user_id, role_id=role_id))

    def replace_user_roles(self, org_id: str, user_id: str, role_ids: Iterable[str]) -> list[Role]:
        with self._session() as session:
            self._write_user_roles(session, org_id, user_id, role_ids)
            session.commit()
        return self.list_user_roles(org_id, user_id)

    def _matrix_rows(self, session: Session, org_id: str, user_id: str | None) -> list[MatrixRole]:
        roles = list(session.exec(select(Role).where(Role.org_id == org_id).order_by(col(Role.name))).all())
        role_ids = [role.id for role in roles]
        grants: dict[str, set[str]] = {role_id: set() for role_id in role_ids}
        if role_ids:
            statement = (
                select(RolePermission.role_id, Permission.name)
                .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
                .where(col(RolePermission.role_id).in_(role_ids))
            )
            for role_id, name in session.exec(statement).all():
                grants[role_id].add(name)
        held: set[str] = set()
        if user_id is not None:
            if self._get_scoped_user(session, org_id, user_id) is None:
                raise NotFoundError("user")
            held = set(
                session.exec(
                    select(UserRole.role_id).where(UserRole.org_id == org_id).where(UserRole.user_id == user_id)
                ).all()
            )
        return [
            MatrixRole(
                role_id=role.id,
                name=role.name,
                permissions=frozenset(grants[role.id]),
                selected=role.id in held,
            )
            for role in roles
        ]

    def _matrix_token(self, rows: Iterable[MatrixRole]) -> str:
        canonical = [
            [row.role_id, row.name, sorted(row.permissions), row.selected]
            for row in sorted(rows, key=lambda item: (item.name, item.role_id or ""))
        ]
        return hashlib.sha256(json.dumps(canonical).encode()).hexdigest()

    def _check_snapshot(
        self,
        session: Session,
        org_id: str,
        user_id: str | None,
        snapshot_token: str | None,
    ) -> None:
        if snapshot_token is None:
            return
        if self._matrix_token(self._matrix_rows(session, org_id, user_id)) != snapshot_token:
            raise EditConflictError("roles matrix changed since it was loaded")

    def get_roles_matrix(self, org_id: str, user_id: str | None = None) -> tuple[MatrixSnapshot, list[str]]:
        with self._session() as session:
            rows = self._matrix_rows(session, org_id, user_id)
            permission_names = list(session.exec(select(Permission.name).order_by(col(Permission.name))).all())
        return MatrixSnapshot(roles=tuple(rows), token=self._matrix_token(rows)), permission_names

    def save_roles_matrix(
        self,
        org_id: str,
        roles: Iterable[MatrixRole],
        *,
        snapshot_token: str | None = None,
        allow_global_admin: bool = False,
    ) -> MatrixSnapshot:
        with self._session() as session:
            self._check_snapshot(session, org_id, None, snapshot_token)
            for row in roles:
                if row.role_id is None:
                    role = Role(org_id=org_id, name=row.name.strip())
                    session.add(role)
                else:
                    scoped = self._get_scoped_role(session, org_id, row.role_id)
                    if scoped is None:
                        raise NotFoundError("role")
                    role = scoped
                    role.name = row.name.strip() or role.name
                    session.add(role)
                try:
                    session.flush()
                except IntegrityError as exc:
                    session.rollback()
                    raise ConflictError("role name already exists in org") from exc
                self._write_role_permissions(session, role, row.permissions, allow_global_admin=allow_global_admin)
            session.commit()
        snapshot, _ = self.get_roles_matrix(org_id)
        return snapshot

    def save_user_roles_matrix(
        self,
        org_id: str,
        user_id: str,
        role_ids: Iterable[str],
        *,
        snapshot_token: str | None = None,
    ) -> str:
        with self._session() as session:
            self._check_snapshot(session, org_id, user_id, snapshot_token)
            self._write_user_roles(session, org_id, user_id, role_ids)
            session.commit()
            return self._matrix_token(self._matrix_rows(session, org_id, user_id))

    def open_roles_matrix(self, org_id: str, user_id: str | None = None) -> RolesMatrix:
        snapshot, permission_names = self.get_roles_matrix(org_id, user_id)
        mode = MatrixMode.ROLE_PERMISSIONS if user_id is None else MatrixMode.USER_ROLES
        return RolesMatrix(snapshot, permission_names, mode=mode)

    def matrix_committer(
        self,
        org_id: str,
        user_id: str | None = None,
        *,
        allow_global_admin: bool = False,
    ) -> RolePermissionsCommit | UserRolesCommit:
        if user_id is None:
            return lambda roles, token: self.save_roles_matrix(
                org_id,
                roles,
                snapshot_token=token,
                allow_global_admin=allow_global_admin,
            )
        return lambda role_ids, token: self.save_user_roles_matrix(
            org_id,
            user_id,
            role_ids,
            snapshot_token=token,
        )

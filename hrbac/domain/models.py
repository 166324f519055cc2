from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Org(SQLModel, table=True):
    __tablename__ = "orgs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    parent_org_id: str | None = Field(default=None, foreign_key="orgs.id", index=True)
    root_org_id: str = Field(index=True)
    user_limit: int = Field(default=0)
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    changed_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        UniqueConstraint("org_id", "id", name="uq_users_org_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="orgs.id", index=True)
    username: str = Field(index=True)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_roles_org_name"),
        UniqueConstraint("org_id", "id", name="uq_roles_org_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="orgs.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        ForeignKeyConstraint(
            ["org_id", "user_id"],
            ["users.org_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["org_id", "role_id"],
            ["roles.org_id", "roles.id"],
            ondelete="CASCADE",
        ),
        Index("ix_user_roles_org_user", "org_id", "user_id"),
        Index("ix_user_roles_org_role", "org_id", "role_id"),
    )

    org_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    role_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Scope(SQLModel, table=True):
    __tablename__ = "scopes"
    __table_args__ = (
        UniqueConstraint("org_id", "id", name="uq_scopes_org_id_id"),
        ForeignKeyConstraint(
            ["org_id", "parent_id"],
            ["scopes.org_id", "scopes.id"],
            name="fk_scopes_org_parent",
        ),
        Index("ix_scopes_org_parent", "org_id", "parent_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="orgs.id", index=True)
    root_org_id: str = Field(index=True)
    name: str
    level_label: str
    parent_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    changed_at: datetime = Field(default_factory=now_utc)


class UserScopeAssignment(SQLModel, table=True):
    __tablename__ = "user_scope_assignments"
    __table_args__ = (
        ForeignKeyConstraint(
            ["org_id", "user_id"],
            ["users.org_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["org_id", "scope_id"],
            ["scopes.org_id", "scopes.id"],
        ),
        Index("ix_user_scope_assignments_org_user", "org_id", "user_id"),
        Index("ix_user_scope_assignments_org_scope", "org_id", "scope_id"),
    )

    org_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    scope_id: str = Field(primary_key=True)
    scope_level: str
    granted_at: datetime = Field(default_factory=now_utc, index=True)


class ScopeLabel(SQLModel, table=True):
    __tablename__ = "scope_labels"
    __table_args__ = (UniqueConstraint("org_id", "level", name="uq_scope_labels_org_level"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    org_id: str = Field(foreign_key="orgs.id", index=True)
    level: int
    label: str
    created_at: datetime = Field(default_factory=now_utc)
    changed_at: datetime = Field(default_factory=now_utc)


class PermissionSource(StrEnum):
    CONFIG = "config"
    DATABASE = "database"


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class OrgCreate(BaseModel):
    name: str
    user_limit: int = PydanticField(default=0, ge=0)


class OrgUpdate(BaseModel):
    name: str | None = None
    user_limit: int | None = PydanticField(default=None, ge=0)
    active: bool | None = None


class OrgRead(ORMReadModel):
    id: str
    name: str
    parent_org_id: str | None = None
    root_org_id: str
    user_limit: int
    active: bool
    created_at: datetime
    changed_at: datetime


class UserCreate(BaseModel):
    username: str
    password: str
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    org_id: str
    username: str
    is_active: bool
    created_at: datetime


class RoleCreate(BaseModel):
    name: str
    description: str | None = None


class RoleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class RoleRead(ORMReadModel):
    id: str
    org_id: str
    name: str
    description: str | None = None
    created_at: datetime


class RolePermissionsReplaceRequest(BaseModel):
    permissions: list[str] = PydanticField(default_factory=list)


class UserRolesReplaceRequest(BaseModel):
    role_ids: list[str] = PydanticField(default_factory=list)


class PermissionCreate(BaseModel):
    name: str
    description: str | None = None


class PermissionUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class PermissionRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    created_at: datetime


class PermissionCatalogEntry(BaseModel):
    name: str
    description: str | None = None
    source: PermissionSource
    id: str | None = None


class PermissionMigrationRead(BaseModel):
    created: list[str] = PydanticField(default_factory=list)
    skipped: list[str] = PydanticField(default_factory=list)
    message: str | None = None


class RolesMatrixRole(BaseModel):
    role_id: str | None = None
    name: str
    permissions: list[str] = PydanticField(default_factory=list)
    selected: bool = False


class RolesMatrixRead(BaseModel):
    roles: list[RolesMatrixRole]
    permissions: list[str]
    user_id: str | None = None
    snapshot_token: str


class RolesMatrixUpdate(BaseModel):
    roles: list[RolesMatrixRole]
    snapshot_token: str | None = None


class UserRolesMatrixUpdate(BaseModel):
    role_ids: list[str] = PydanticField(default_factory=list)
    snapshot_token: str | None = None


class ScopeCreate(BaseModel):
    name: str
    level_label: str
    parent_id: str | None = None


class ScopeUpdate(BaseModel):
    name: str | None = None
    level_label: str | None = None
    parent_id: str | None = None


class ScopeRead(ORMReadModel):
    id: str
    org_id: str
    root_org_id: str
    name: str
    level_label: str
    parent_id: str | None = None
    created_at: datetime
    changed_at: datetime


class ScopeTreeNode(ScopeRead):
    children: list[ScopeTreeNode] = PydanticField(default_factory=list)


ScopeTreeNode.model_rebuild()


class OrgScopeTree(BaseModel):
    org_id: str
    org_name: str
    roots: list[ScopeTreeNode]


class ScopeDeleteRead(BaseModel):
    deleted_scope_ids: list[str]
    revoked_assignments: int


class UserScopeAssignRequest(BaseModel):
    scope_id: str


class UserScopesReplaceRequest(BaseModel):
    scope_ids: list[str] = PydanticField(default_factory=list)


class UserScopeAssignmentRead(ORMReadModel):
    org_id: str
    user_id: str
    scope_id: str
    scope_level: str
    granted_at: datetime


class ScopeLabelRead(BaseModel):
    id: str | None = None
    org_id: str
    level: int
    label: str
    is_default: bool = False


class ScopeLabelUpsert(BaseModel):
    label: str = PydanticField(min_length=1)


class ScopeLabelBatchItem(ScopeLabelUpsert):
    level: int


class ScopeLabelsBatchUpsert(BaseModel):
    labels: list[ScopeLabelBatchItem] = PydanticField(default_factory=list)


class AccessCheckRequest(BaseModel):
    user_id: str | None = None
    required_permissions: list[str] = PydanticField(default_factory=list)
    target_scope_id: str | None = None
    strict: bool = False


class AccessUserRead(BaseModel):
    id: str
    username: str
    org_id: str
    org_name: str | None = None
    root_org_id: str | None = None
    parent_org_id: str | None = None


class AccessDecisionRead(BaseModel):
    authenticated: bool
    permission_ok: bool
    missing_permissions: list[str] = PydanticField(default_factory=list)
    scope_ok: bool | None = None
    scope_access_via: str | None = None
    scope_access_via_name: str | None = None
    user: AccessUserRead | None = None
    permissions: list[str] = PydanticField(default_factory=list)


class DevLoginRequest(BaseModel):
    org_id: str
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    org_id: str
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str]

"""init orgs, identity, rbac and scope tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_org_id", "audit_logs", ["org_id"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_ts", "audit_logs", ["ts"])

    op.create_table(
        "orgs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("parent_org_id", sa.String(), nullable=True),
        sa.Column("root_org_id", sa.String(), nullable=False),
        sa.Column("user_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["parent_org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orgs_name", "orgs", ["name"], unique=True)
    op.create_index("ix_orgs_parent_org_id", "orgs", ["parent_org_id"])
    op.create_index("ix_orgs_root_org_id", "orgs", ["root_org_id"])
    op.create_index("ix_orgs_active", "orgs", ["active"])
    op.create_index("ix_orgs_created_at", "orgs", ["created_at"])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        sa.UniqueConstraint("org_id", "id", name="uq_users_org_id_id"),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"])
    op.create_index("ix_users_username", "users", ["username"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "roles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "name", name="uq_roles_org_name"),
        sa.UniqueConstraint("org_id", "id", name="uq_roles_org_id_id"),
    )
    op.create_index("ix_roles_org_id", "roles", ["org_id"])
    op.create_index("ix_roles_name", "roles", ["name"])
    op.create_index("ix_roles_created_at", "roles", ["created_at"])

    op.create_table(
        "permissions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permissions_name", "permissions", ["name"], unique=True)
    op.create_index("ix_permissions_created_at", "permissions", ["created_at"])

    op.create_table(
        "user_roles",
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id", "user_id"], ["users.org_id", "users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["org_id", "role_id"], ["roles.org_id", "roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("org_id", "user_id", "role_id"),
    )
    op.create_index("ix_user_roles_org_user", "user_roles", ["org_id", "user_id"])
    op.create_index("ix_user_roles_org_role", "user_roles", ["org_id", "role_id"])
    op.create_index("ix_user_roles_created_at", "user_roles", ["created_at"])

    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("permission_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"]),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )
    op.create_index("ix_role_permissions_created_at", "role_permissions", ["created_at"])

    op.create_table(
        "scopes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("root_org_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("level_label", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["orgs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "id", name="uq_scopes_org_id_id"),
    )
    # Self reference needs the (org_id, id) unique key above to exist first.
    op.create_foreign_key(
        "fk_scopes_org_parent",
        "scopes",
        "scopes",
        ["org_id", "parent_id"],
        ["org_id", "id"],
    )
    op.create_index("ix_scopes_org_id", "scopes", ["org_id"])
    op.create_index("ix_scopes_root_org_id", "scopes", ["root_org_id"])
    op.create_index("ix_scopes_parent_id", "scopes", ["parent_id"])
    op.create_index("ix_scopes_org_parent", "scopes", ["org_id", "parent_id"])
    op.create_index("ix_scopes_created_at", "scopes", ["created_at"])

    op.create_table(
        "user_scope_assignments",
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=False),
        sa.Column("scope_level", sa.String(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["org_id", "user_id"], ["users.org_id", "users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["org_id", "scope_id"], ["scopes.org_id", "scopes.id"]),
        sa.PrimaryKeyConstraint("org_id", "user_id", "scope_id"),
    )
    op.create_index(
        "ix_user_scope_assignments_org_user",
        "user_scope_assignments",
        ["org_id", "user_id"],
    )
    op.create_index(
        "ix_user_scope_assignments_org_scope",
        "user_scope_assignments",
        ["org_id", "scope_id"],
    )
    op.create_index(
        "ix_user_scope_assignments_granted_at",
        "user_scope_assignments",
        ["granted_at"],
    )


def downgrade() -> None:
    op.drop_table("user_scope_assignments")
    op.drop_constraint("fk_scopes_org_parent", "scopes", type_="foreignkey")
    op.drop_table("scopes")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("orgs")
    op.drop_table("audit_logs")

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from hrbac.domain.errors import ConflictError, CycleOrOrphanError, NotFoundError, PersistenceError
from hrbac.domain.models import (
    Org,
    OrgScopeTree,
    Scope,
    ScopeCreate,
    ScopeTreeNode,
    ScopeUpdate,
    UserScopeAssignment,
    now_utc,
)
from hrbac.domain.scope_tree import ScopeTree, build_tree
from hrbac.infra.db import open_session

logger = structlog.get_logger(__name__)


class ScopeService:
    def _session(self) -> Session:
        return open_session()

    def _get_scoped_scope(self, session: Session, org_id: str, scope_id: str) -> Scope | None:
        statement = select(Scope).where(Scope.org_id == org_id).where(Scope.id == scope_id)
        return session.exec(statement).first()

    def _org_scopes(self, session: Session, org_id: str) -> list[Scope]:
        statement = select(Scope).where(Scope.org_id == org_id).order_by(col(Scope.created_at))
        return list(session.exec(statement).all())

    def _build_checked(self, org_id: str, scopes: list[Scope]) -> ScopeTree:
        try:
            return build_tree(scopes)
        except CycleOrOrphanError as exc:
            logger.critical(
                "scope tree integrity violation",
                org_id=org_id,
                scope_id=exc.scope_id,
                reason=exc.reason,
            )
            raise

    def _resolve_parent(
        self,
        session: Session,
        org_id: str,
        current_scope_id: str,
        parent_id: str | None,
    ) -> Scope | None:
        if parent_id is None:
            return None
        if parent_id == current_scope_id:
            raise ConflictError("scope cannot be parent of itself")
        parent = self._get_scoped_scope(session, org_id, parent_id)
        if parent is None:
            # Also covers a parent that lives in another org.
            raise NotFoundError("parent scope")
        return parent

    def create_scope(self, org_id: str, payload: ScopeCreate) -> Scope:
        with self._session() as session:
            org = session.get(Org, org_id)
            if org is None:
                raise NotFoundError("org")
            if not org.active:
                raise ConflictError("org is deactivated")
            scope = Scope(
                org_id=org_id,
                root_org_id=org.root_org_id,
                name=payload.name.strip(),
                level_label=payload.level_label.strip(),
                parent_id=payload.parent_id,
            )
            self._resolve_parent(session, org_id, scope.id, payload.parent_id)
            session.add(scope)
            session.commit()
            session.refresh(scope)
            return scope

    def list_scopes(self, org_id: str) -> list[Scope]:
        with self._session() as session:
            return self._org_scopes(session, org_id)

    def get_scope(self, org_id: str, scope_id: str) -> Scope:
        with self._session() as session:
            scope = self._get_scoped_scope(session, org_id, scope_id)
            if scope is None:
                raise NotFoundError("scope")
            return scope

    def load_tree(self, org_id: str) -> ScopeTree:
        with self._session() as session:
            return self._build_checked(org_id, self._org_scopes(session, org_id))

    def update_scope(self, org_id: str, scope_id: str, payload: ScopeUpdate) -> Scope:
        with self._session() as session:
            scope = self._get_scoped_scope(session, org_id, scope_id)
            if scope is None:
                raise NotFoundError("scope")

            if "name" in payload.model_fields_set and payload.name is not None:
                scope.name = payload.name.strip()
            if "level_label" in payload.model_fields_set and payload.level_label is not None:
                scope.level_label = payload.level_label.strip()
            if "parent_id" in payload.model_fields_set and payload.parent_id != scope.parent_id:
                parent = self._resolve_parent(session, org_id, scope.id, payload.parent_id)
                if parent is not None:
                    tree = self._build_checked(org_id, self._org_scopes(session, org_id))
                    if parent.id in tree.descendants_of(scope.id):
                        raise ConflictError("scope cannot move under its descendant")
                scope.parent_id = payload.parent_id

            scope.changed_at = now_utc()
            session.add(scope)
            session.commit()
            session.refresh(scope)
            return scope

    def delete_scope(self, org_id: str, scope_id: str) -> dict[str, Any]:
        """Delete a scope, its descendants and every assignment pointing at them in one transaction."""
        with self._session() as session:
            if self._get_scoped_scope(session, org_id, scope_id) is None:
                raise NotFoundError("scope")
            scopes = self._org_scopes(session, org_id)
            tree = self._build_checked(org_id, scopes)
            doomed = tree.subtree_post_order(scope_id)
            by_id = {scope.id: scope for scope in scopes}
            try:
                assignments = list(
                    session.exec(
                        select(UserScopeAssignment)
                        .where(UserScopeAssignment.org_id == org_id)
                        .where(col(UserScopeAssignment.scope_id).in_(doomed))
                    ).all()
                )
                for assignment in assignments:
                    session.delete(assignment)
                session.flush()
                for doomed_id in doomed:
                    session.delete(by_id[doomed_id])
                    session.flush()
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.critical(
                    "scope cascade delete failed",
                    org_id=org_id,
                    scope_id=scope_id,
                    scope_ids=doomed,
                    error=str(exc),
                )
                raise PersistenceError("scope cascade delete failed") from exc

        logger.info(
            "scope subtree deleted",
            org_id=org_id,
            scope_id=scope_id,
            deleted=len(doomed),
            revoked_assignments=len(assignments),
        )
        return {"deleted_scope_ids": doomed, "revoked_assignments": len(assignments)}

    def ancestors(self, org_id: str, scope_id: str) -> list[Scope]:
        with self._session() as session:
            scopes = self._org_scopes(session, org_id)
        tree = self._build_checked(org_id, scopes)
        if scope_id not in tree:
            raise NotFoundError("scope")
        by_id = {scope.id: scope for scope in scopes}
        return [by_id[item] for item in tree.ancestors_of(scope_id)]

    def _nodes(self, tree: ScopeTree, by_id: dict[str, Scope], scope_ids: list[str]) -> list[ScopeTreeNode]:
        nodes: list[ScopeTreeNode] = []
        for item in sorted(scope_ids, key=lambda scope_id: by_id[scope_id].name):
            node = ScopeTreeNode.model_validate(by_id[item])
            node.children = self._nodes(tree, by_id, tree.children_of(item))
            nodes.append(node)
        return nodes

    def list_tree(self, org_id: str) -> list[ScopeTreeNode]:
        with self._session() as session:
            scopes = self._org_scopes(session, org_id)
        tree = self._build_checked(org_id, scopes)
        return self._nodes(tree, {scope.id: scope for scope in scopes}, tree.roots())

    def list_all_trees(self) -> list[OrgScopeTree]:
        with self._session() as session:
            orgs = list(session.exec(select(Org).order_by(col(Org.name))).all())
            scopes = list(session.exec(select(Scope)).all())
        grouped: dict[str, list[Scope]] = {}
        for scope in scopes:
            grouped.setdefault(scope.org_id, []).append(scope)
        result: list[OrgScopeTree] = []
        for org in orgs:
            org_scopes = grouped.get(org.id, [])
            if not org_scopes:
                continue
            tree = self._build_checked(org.id, org_scopes)
            roots = self._nodes(tree, {scope.id: scope for scope in org_scopes}, tree.roots())
            result.append(OrgScopeTree(org_id=org.id, org_name=org.name, roots=roots))
        return result

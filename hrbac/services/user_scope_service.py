from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlmodel import Session, col, select

from hrbac.domain.errors import NotFoundError
from hrbac.domain.models import Scope, User, UserScopeAssignment
from hrbac.infra.db import open_session


class UserScopeService:
    def _session(self) -> Session:
        return open_session()

    def _require_user(self, session: Session, org_id: str, user_id: str) -> User:
        user = session.exec(select(User).where(User.org_id == org_id).where(User.id == user_id)).first()
        if user is None:
            raise NotFoundError("user")
        return user

    def _scoped_scopes(self, session: Session, org_id: str, scope_ids: Iterable[str]) -> dict[str, Scope]:
        wanted = sorted({item for item in scope_ids if item})
        if not wanted:
            return {}
        statement = select(Scope).where(Scope.org_id == org_id).where(col(Scope.id).in_(wanted))
        found = {scope.id: scope for scope in session.exec(statement).all()}
        missing = [item for item in wanted if item not in found]
        if missing:
            raise NotFoundError("scope", f"scope not found: {', '.join(missing)}")
        return found

    def _assignments(self, session: Session, org_id: str, user_id: str) -> list[UserScopeAssignment]:
        statement = (
            select(UserScopeAssignment)
            .where(UserScopeAssignment.org_id == org_id)
            .where(UserScopeAssignment.user_id == user_id)
            .order_by(col(UserScopeAssignment.granted_at))
        )
        return list(session.exec(statement).all())

    def list_user_scopes(self, org_id: str, user_id: str) -> list[UserScopeAssignment]:
        with self._session() as session:
            self._require_user(session, org_id, user_id)
            return self._assignments(session, org_id, user_id)

    def get_users_by_scope(self, org_id: str, scope_id: str) -> list[UserScopeAssignment]:
        """Direct grants on ``scope_id``; holders of an ancestor grant are not listed."""
        with self._session() as session:
            self._scoped_scopes(session, org_id, [scope_id])
            statement = (
                select(UserScopeAssignment)
                .where(UserScopeAssignment.org_id == org_id)
                .where(UserScopeAssignment.scope_id == scope_id)
                .order_by(col(UserScopeAssignment.granted_at))
            )
            return list(session.exec(statement).all())

    def assigned_scope_ids(self, org_id: str, user_id: str) -> set[str]:
        with self._session() as session:
            statement = (
                select(UserScopeAssignment.scope_id)
                .where(UserScopeAssignment.org_id == org_id)
                .where(UserScopeAssignment.user_id == user_id)
            )
            return set(session.exec(statement).all())

    def assign_scope(self, org_id: str, user_id: str, scope_id: str) -> UserScopeAssignment:
        with self._session() as session:
            self._require_user(session, org_id, user_id)
            scope = self._scoped_scopes(session, org_id, [scope_id])[scope_id]
            existing = session.get(UserScopeAssignment, (org_id, user_id, scope_id))
            if existing is not None:
                return existing
            assignment = UserScopeAssignment(
                org_id=org_id,
                user_id=user_id,
                scope_id=scope_id,
                scope_level=scope.level_label,
            )
            session.add(assignment)
            session.commit()
            session.refresh(assignment)
            return assignment

    def revoke_scope(self, org_id: str, user_id: str, scope_id: str) -> None:
        with self._session() as session:
            self._require_user(session, org_id, user_id)
            assignment = session.get(UserScopeAssignment, (org_id, user_id, scope_id))
            if assignment is None:
                raise NotFoundError("scope assignment")
            session.delete(assignment)
            session.commit()

    def replace_user_scopes(self, org_id: str, user_id: str, scope_ids: Iterable[str]) -> dict[str, Any]:
        with self._session() as session:
            self._require_user(session, org_id, user_id)
            scopes = self._scoped_scopes(session, org_id, scope_ids)
            current = self._assignments(session, org_id, user_id)
            held = {item.scope_id for item in current}

            removed = sorted(held - scopes.keys())
            for assignment in current:
                if assignment.scope_id in removed:
                    session.delete(assignment)
            added = sorted(scopes.keys() - held)
            for scope_id in added:
                session.add(
                    UserScopeAssignment(
                        org_id=org_id,
                        user_id=user_id,
                        scope_id=scope_id,
                        scope_level=scopes[scope_id].level_label,
                    )
                )
            session.commit()
            assignments = self._assignments(session, org_id, user_id)
        return {"added": added, "removed": removed, "assignments": assignments}

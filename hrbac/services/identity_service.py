from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from hrbac.domain.errors import ConflictError, NotAuthenticatedError, NotFoundError
from hrbac.domain.models import (
    BootstrapAdminRequest,
    Org,
    OrgCreate,
    OrgUpdate,
    Role,
    RolePermission,
    User,
    UserCreate,
    UserRole,
    UserUpdate,
    now_utc,
)
from hrbac.domain.permissions import DEFAULT_PERMISSION_NAMES, PERM_GLOBAL_ADMIN
from hrbac.infra.auth import hash_password
from hrbac.infra.db import open_session
from hrbac.infra.org_cache import OrgCache, OrgCacheEntry
from hrbac.services.registry_service import RegistryService, ensure_permissions


class IdentityService:
    def __init__(self, org_cache: OrgCache | None = None) -> None:
        self.org_cache = org_cache or OrgCache()
        self.registry = RegistryService()

    def _session(self) -> Session:
        return open_session()

    def _get_scoped_user(self, session: Session, org_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.org_id == org_id).where(User.id == user_id)
        return session.exec(statement).first()

    def _get_active_org(self, session: Session, org_id: str) -> Org:
        org = session.get(Org, org_id)
        if org is None:
            raise NotFoundError("org")
        if not org.active:
            raise ConflictError("org is deactivated")
        return org

    def _load_org_entry(self, org_id: str) -> OrgCacheEntry | None:
        with self._session() as session:
            org = session.get(Org, org_id)
            if org is None:
                return None
            return OrgCacheEntry(
                org_id=org.id,
                org_name=org.name,
                parent_org_id=org.parent_org_id,
                root_org_id=org.root_org_id,
                active=org.active,
            )

    def get_org_info(self, org_id: str) -> OrgCacheEntry | None:
        return self.org_cache.get_or_load(org_id, self._load_org_entry)

    def create_org(self, payload: OrgCreate, *, parent_org_id: str | None = None) -> Org:
        with self._session() as session:
            org = Org(name=payload.name.strip(), user_limit=payload.user_limit, root_org_id="")
            if parent_org_id is None:
                org.root_org_id = org.id
            else:
                parent = self._get_active_org(session, parent_org_id)
                org.parent_org_id = parent.id
                org.root_org_id = parent.root_org_id
            session.add(org)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("org name already exists") from exc
            session.refresh(org)
            return org

    def list_orgs(self, root_org_id: str) -> list[Org]:
        with self._session() as session:
            statement = select(Org).where(Org.root_org_id == root_org_id).order_by(col(Org.created_at))
            return list(session.exec(statement).all())

    def list_all_orgs(self) -> list[Org]:
        with self._session() as session:
            return list(session.exec(select(Org).order_by(col(Org.created_at))).all())

    def get_org(self, org_id: str) -> Org:
        with self._session() as session:
            org = session.get(Org, org_id)
            if org is None:
                raise NotFoundError("org")
            return org

    def update_org(self, org_id: str, payload: OrgUpdate) -> Org:
        with self._session() as session:
            org = session.get(Org, org_id)
            if org is None:
                raise NotFoundError("org")
            if "name" in payload.model_fields_set and payload.name is not None:
                org.name = payload.name.strip()
            if "user_limit" in payload.model_fields_set and payload.user_limit is not None:
                org.user_limit = payload.user_limit
            if "active" in payload.model_fields_set and payload.active is not None:
                org.active = payload.active
            org.changed_at = now_utc()
            session.add(org)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("org name already exists") from exc
            session.refresh(org)
        self.org_cache.invalidate(org_id)
        return org

    def deactivate_org(self, org_id: str) -> Org:
        with self._session() as session:
            org = session.get(Org, org_id)
            if org is None:
                raise NotFoundError("org")
            org.active = False
            org.changed_at = now_utc()
            session.add(org)
            session.commit()
            session.refresh(org)
        self.org_cache.invalidate(org_id)
        return org

    def create_user(self, org_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            org = self._get_active_org(session, org_id)
            if org.user_limit > 0:
                statement = select(func.count()).select_from(User).where(User.org_id == org_id)
                if int(session.exec(statement).one()) >= org.user_limit:
                    raise ConflictError("org user limit reached")
            user = User(
                org_id=org_id,
                username=payload.username.strip(),
                password_hash=hash_password(payload.password),
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists in org") from exc
            session.refresh(user)
            return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest, *, global_admin: bool = False) -> User:
        with self._session() as session:
            self._get_active_org(session, payload.org_id)
            existing = session.exec(select(User.id).where(User.org_id == payload.org_id)).first()
            if existing is not None:
                raise ConflictError("org already initialized")

            names = list(DEFAULT_PERMISSION_NAMES)
            if global_admin:
                names.append(PERM_GLOBAL_ADMIN)
            permissions = ensure_permissions(session, names)

            admin_role = Role(org_id=payload.org_id, name="admin", description="bootstrap admin role")
            admin_user = User(
                org_id=payload.org_id,
                username=payload.username.strip(),
                password_hash=hash_password(payload.password),
                is_active=True,
            )
            session.add(admin_role)
            session.add(admin_user)
            session.flush()
            for name in names:
                session.add(RolePermission(role_id=admin_role.id, permission_id=permissions[name].id))
            session.add(UserRole(org_id=payload.org_id, user_id=admin_user.id, role_id=admin_role.id))
            session.commit()
            session.refresh(admin_user)
            return admin_user

    def list_users(self, org_id: str) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.org_id == org_id).order_by(col(User.username))
            return list(session.exec(statement).all())

    def get_user(self, org_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, org_id, user_id)
            if user is None:
                raise NotFoundError("user")
            return user

    def update_user(self, org_id: str, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, org_id, user_id)
            if user is None:
                raise NotFoundError("user")
            if payload.password is not None:
                user.password_hash = hash_password(payload.password)
            if payload.is_active is not None:
                user.is_active = payload.is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def delete_user(self, org_id: str, user_id: str) -> None:
        with self._session() as session:
            user = self._get_scoped_user(session, org_id, user_id)
            if user is None:
                raise NotFoundError("user")
            session.delete(user)
            session.commit()

    def dev_login(self, org_id: str, username: str, password: str) -> tuple[User, str, list[str]]:
        with self._session() as session:
            # Org state comes from the database here, never from the org cache.
            org = session.get(Org, org_id)
            if org is None or not org.active:
                raise NotAuthenticatedError("invalid credentials")
            statement = select(User).where(User.org_id == org_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise NotAuthenticatedError("invalid credentials")
            if not user.is_active:
                raise NotAuthenticatedError("user disabled")
            if user.password_hash != hash_password(password):
                raise NotAuthenticatedError("invalid credentials")

        permissions = sorted(self.registry.effective_permissions(org_id, user.id))
        return user, org.root_org_id, permissions

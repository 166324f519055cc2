from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from hrbac import main as app_main
from hrbac.domain.models import AuditLog
from hrbac.domain.permissions import PERM_GLOBAL_ADMIN, PERM_PERMISSION_MANAGEMENT, PERM_USER_MANAGEMENT
from hrbac.infra import audit, db, redis_state
from hrbac.infra.bootstrap import bootstrap_global_admin
from hrbac.services.registry_service import APP_PERMISSIONS_ENV


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        return True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._store.pop(key, None) is not None)

    def zadd(self, name: str, mapping: dict[str, float]) -> int:
        self._zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    def zpopmin(self, name: str, count: int = 1) -> list[tuple[str, float]]:
        zset = self._zsets.get(name, {})
        popped = sorted(zset.items(), key=lambda item: item[1])[:count]
        for member, _score in popped:
            del zset[member]
        return popped

    def zrem(self, name: str, *members: str) -> int:
        zset = self._zsets.get(name, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def ping(self) -> bool:
        return True


@pytest.fixture()
def rbac_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "rbac_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    fake_redis = FakeRedis()
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, org_id: str, username: str, password: str) -> str:
    response = client.post(
        "/api/identity/dev-login",
        json={"org_id": org_id, "username": username, "password": password},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _admin_token(client: TestClient, org_name: str) -> tuple[str, str]:
    org_id = client.post("/api/identity/orgs", json={"name": org_name}).json()["id"]
    bootstrap = client.post(
        "/api/identity/bootstrap-admin",
        json={"org_id": org_id, "username": "admin", "password": "admin-pass"},
    )
    assert bootstrap.status_code == 201
    return org_id, _login(client, org_id, "admin", "admin-pass")


def _global_admin_token(client: TestClient, org_name: str) -> tuple[str, str]:
    platform_id, _user_id = bootstrap_global_admin(org_name, "root", "root-pass")
    return platform_id, _login(client, platform_id, "root", "root-pass")


def test_role_crud(rbac_client: TestClient) -> None:
    _org_id, token = _admin_token(rbac_client, "tenant-roles")
    headers = _auth_header(token)

    created = rbac_client.post("/api/rbac/roles", json={"name": "auditor", "description": "reads"}, headers=headers)
    assert created.status_code == 201
    role_id = created.json()["id"]
    duplicate = rbac_client.post("/api/rbac/roles", json={"name": "auditor"}, headers=headers)
    assert duplicate.status_code == 409

    renamed = rbac_client.patch(f"/api/rbac/roles/{role_id}", json={"name": "reviewer"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "reviewer"
    assert renamed.json()["description"] == "reads"

    listed = rbac_client.get("/api/rbac/roles", headers=headers)
    assert [item["name"] for item in listed.json()] == ["admin", "reviewer"]

    assert rbac_client.delete(f"/api/rbac/roles/{role_id}", headers=headers).status_code == 204
    assert rbac_client.get(f"/api/rbac/roles/{role_id}", headers=headers).status_code == 404


def test_role_permissions_replace(rbac_client: TestClient) -> None:
    _org_id, token = _admin_token(rbac_client, "tenant-role-perms")
    headers = _auth_header(token)
    role_id = rbac_client.post("/api/rbac/roles", json={"name": "helpdesk"}, headers=headers).json()["id"]

    replaced = rbac_client.put(
        f"/api/rbac/roles/{role_id}/permissions",
        json={"permissions": [PERM_USER_MANAGEMENT]},
        headers=headers,
    )
    assert replaced.status_code == 200
    assert replaced.json() == [PERM_USER_MANAGEMENT]

    unknown = rbac_client.put(
        f"/api/rbac/roles/{role_id}/permissions",
        json={"permissions": ["no_such_permission"]},
        headers=headers,
    )
    assert unknown.status_code == 404
    current = rbac_client.get(f"/api/rbac/roles/{role_id}/permissions", headers=headers)
    assert current.json() == [PERM_USER_MANAGEMENT]


def test_global_admin_permission_grant_is_reserved(rbac_client: TestClient) -> None:
    _org_id, token = _admin_token(rbac_client, "tenant-reserved")
    _platform_id, root_token = _global_admin_token(rbac_client, "platform-rbac")
    role_id = rbac_client.post("/api/rbac/roles", json={"name": "escalate"}, headers=_auth_header(token)).json()["id"]

    denied = rbac_client.put(
        f"/api/rbac/roles/{role_id}/permissions",
        json={"permissions": [PERM_GLOBAL_ADMIN]},
        headers=_auth_header(token),
    )
    assert denied.status_code == 403
    assert denied.json()["detail"]["missing_permissions"] == [PERM_GLOBAL_ADMIN]

    own_role = rbac_client.post("/api/rbac/roles", json={"name": "platform-ops"}, headers=_auth_header(root_token))
    granted = rbac_client.put(
        f"/api/rbac/roles/{own_role.json()['id']}/permissions",
        json={"permissions": [PERM_GLOBAL_ADMIN]},
        headers=_auth_header(root_token),
    )
    assert granted.status_code == 200


def test_permissions_crud_and_catalog(rbac_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _platform_id, root_token = _global_admin_token(rbac_client, "platform-permissions")
    headers = _auth_header(root_token)
    monkeypatch.setenv(APP_PERMISSIONS_ENV, "reports_read,reports_write")

    created = rbac_client.post("/api/rbac/permissions", json={"name": "reports_read"}, headers=headers)
    assert created.status_code == 201
    permission_id = created.json()["id"]
    assert rbac_client.post("/api/rbac/permissions", json={"name": "reports_read"}, headers=headers).status_code == 409

    catalog = rbac_client.get("/api/rbac/permissions/catalog", headers=headers)
    assert catalog.status_code == 200
    sources = {item["name"]: item["source"] for item in catalog.json()}
    assert sources["reports_read"] == "database"
    assert sources["reports_write"] == "config"

    described = rbac_client.patch(
        f"/api/rbac/permissions/{permission_id}",
        json={"description": "read reports"},
        headers=headers,
    )
    assert described.json()["description"] == "read reports"
    assert rbac_client.delete(f"/api/rbac/permissions/{permission_id}", headers=headers).status_code == 204
    assert rbac_client.get(f"/api/rbac/permissions/{permission_id}", headers=headers).status_code == 404

    in_use = rbac_client.get("/api/rbac/permissions", headers=headers).json()
    user_management = next(item for item in in_use if item["name"] == PERM_USER_MANAGEMENT)
    blocked = rbac_client.delete(f"/api/rbac/permissions/{user_management['id']}", headers=headers)
    assert blocked.status_code == 409


def test_tenant_admin_cannot_edit_shared_permission_catalog(rbac_client: TestClient) -> None:
    platform_id, _root_token = _global_admin_token(rbac_client, "platform-catalog")
    org_id, token = _admin_token(rbac_client, "tenant-catalog")
    headers = _auth_header(token)
    cross_tenant = {"org_id": platform_id}
    assert rbac_client.get("/api/scopes/tree", params=cross_tenant, headers=headers).status_code == 403

    catalog = {item["name"]: item["id"] for item in rbac_client.get("/api/rbac/permissions", headers=headers).json()}
    demote = rbac_client.patch(
        f"/api/rbac/permissions/{catalog[PERM_GLOBAL_ADMIN]}",
        json={"name": "renamed_global_admin"},
        headers=headers,
    )
    assert demote.status_code == 403
    promote = rbac_client.patch(
        f"/api/rbac/permissions/{catalog[PERM_PERMISSION_MANAGEMENT]}",
        json={"name": PERM_GLOBAL_ADMIN},
        headers=headers,
    )
    assert promote.status_code == 403
    assert rbac_client.post("/api/rbac/permissions", json={"name": "tenant_made"}, headers=headers).status_code == 403
    assert rbac_client.delete(f"/api/rbac/permissions/{catalog[PERM_GLOBAL_ADMIN]}", headers=headers).status_code == 403
    assert rbac_client.post("/api/rbac/permissions/migrate", headers=headers).status_code == 403

    names = {item["name"] for item in rbac_client.get("/api/rbac/permissions", headers=headers).json()}
    assert {PERM_GLOBAL_ADMIN, PERM_PERMISSION_MANAGEMENT} <= names
    assert "tenant_made" not in names
    fresh_token = _login(rbac_client, org_id, "admin", "admin-pass")
    fresh = rbac_client.get("/api/scopes/tree", params=cross_tenant, headers=_auth_header(fresh_token))
    assert fresh.status_code == 403


def test_migrate_config_permissions_endpoint(rbac_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    org_id, root_token = _global_admin_token(rbac_client, "platform-migrate")
    headers = _auth_header(root_token)

    monkeypatch.setenv(APP_PERMISSIONS_ENV, "")
    empty = rbac_client.post("/api/rbac/permissions/migrate", headers=headers)
    assert empty.status_code == 200
    assert empty.json() == {"created": [], "skipped": [], "message": "No permissions to migrate"}

    monkeypatch.setenv(APP_PERMISSIONS_ENV, "reports_read, reports_write")
    first = rbac_client.post("/api/rbac/permissions/migrate", headers=headers)
    assert first.json()["created"] == ["reports_read", "reports_write"]
    second = rbac_client.post("/api/rbac/permissions/migrate", headers=headers)
    assert second.json()["created"] == []
    assert second.json()["skipped"] == ["reports_read", "reports_write"]

    with Session(db.get_engine(), expire_on_commit=False) as session:
        rows = list(
            session.exec(
                select(AuditLog).where(AuditLog.org_id == org_id).where(AuditLog.action == "permissions.migrate")
            ).all()
        )
    assert len(rows) == 3


def test_roles_matrix_round_trip(rbac_client: TestClient) -> None:
    _org_id, token = _admin_token(rbac_client, "tenant-matrix")
    headers = _auth_header(token)

    loaded = rbac_client.get("/api/rbac/roles-matrix", headers=headers)
    assert loaded.status_code == 200
    body = loaded.json()
    assert [item["name"] for item in body["roles"]] == ["admin"]
    admin_row = body["roles"][0]

    saved = rbac_client.put(
        "/api/rbac/roles-matrix",
        json={
            "snapshot_token": body["snapshot_token"],
            "roles": [
                {"name": "support", "permissions": [PERM_USER_MANAGEMENT]},
            ],
        },
        headers=headers,
    )
    assert saved.status_code == 200
    rows = {item["name"]: item for item in saved.json()["roles"]}
    assert rows["support"]["permissions"] == [PERM_USER_MANAGEMENT]
    assert rows["admin"]["permissions"] == admin_row["permissions"]
    assert saved.json()["snapshot_token"] != body["snapshot_token"]

    stale = rbac_client.put(
        "/api/rbac/roles-matrix",
        json={"snapshot_token": body["snapshot_token"], "roles": [{"name": "late", "permissions": []}]},
        headers=headers,
    )
    assert stale.status_code == 409
    names = [item["name"] for item in rbac_client.get("/api/rbac/roles", headers=headers).json()]
    assert "late" not in names


def test_user_roles_matrix(rbac_client: TestClient) -> None:
    _org_id, token = _admin_token(rbac_client, "tenant-user-matrix")
    headers = _auth_header(token)
    user_id = rbac_client.post(
        "/api/identity/users",
        json={"username": "frank", "password": "pw"},
        headers=headers,
    ).json()["id"]
    role_id = rbac_client.post("/api/rbac/roles", json={"name": "viewer"}, headers=headers).json()["id"]

    loaded = rbac_client.get(f"/api/rbac/users/{user_id}/roles-matrix", headers=headers)
    assert loaded.status_code == 200
    assert {item["name"]: item["selected"] for item in loaded.json()["roles"]} == {"admin": False, "viewer": False}

    saved = rbac_client.put(
        f"/api/rbac/users/{user_id}/roles-matrix",
        json={"role_ids": [role_id], "snapshot_token": loaded.json()["snapshot_token"]},
        headers=headers,
    )
    assert saved.status_code == 200
    assert {item["name"]: item["selected"] for item in saved.json()["roles"]} == {"admin": False, "viewer": True}

    stale = rbac_client.put(
        f"/api/rbac/users/{user_id}/roles-matrix",
        json={"role_ids": [], "snapshot_token": loaded.json()["snapshot_token"]},
        headers=headers,
    )
    assert stale.status_code == 409

    missing_user = rbac_client.get("/api/rbac/users/nobody/roles-matrix", headers=headers)
    assert missing_user.status_code == 404

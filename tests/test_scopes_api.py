from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from hrbac import main as app_main
from hrbac.domain.models import Scope, UserScopeAssignment
from hrbac.infra import audit, db, redis_state
from hrbac.infra.bootstrap import bootstrap_global_admin
from hrbac.infra.error_sanitizer import GENERIC_ERROR_MESSAGE


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
def scopes_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "scopes_test.db"
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


def _create_scope(
    client: TestClient,
    token: str,
    name: str,
    level_label: str,
    parent_id: str | None = None,
) -> str:
    response = client.post(
        "/api/scopes",
        json={"name": name, "level_label": level_label, "parent_id": parent_id},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_user(client: TestClient, token: str, username: str) -> str:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": "pw"},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_scope_crud_and_tree(scopes_client: TestClient) -> None:
    org_id, token = _admin_token(scopes_client, "tenant-scopes")
    headers = _auth_header(token)
    company = _create_scope(scopes_client, token, "Company", "company")
    north = _create_scope(scopes_client, token, "North", "region", company)
    south = _create_scope(scopes_client, token, "South", "region", company)
    plant = _create_scope(scopes_client, token, "Plant 1", "site", north)

    fetched = scopes_client.get(f"/api/scopes/{plant}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["parent_id"] == north
    assert fetched.json()["org_id"] == org_id

    listed = scopes_client.get("/api/scopes", headers=headers)
    assert {item["id"] for item in listed.json()} == {company, north, south, plant}

    tree = scopes_client.get("/api/scopes/tree", headers=headers)
    assert tree.status_code == 200
    roots = tree.json()
    assert [node["name"] for node in roots] == ["Company"]
    assert [node["name"] for node in roots[0]["children"]] == ["North", "South"]
    assert [node["name"] for node in roots[0]["children"][0]["children"]] == ["Plant 1"]

    ancestors = scopes_client.get(f"/api/scopes/{plant}/ancestors", headers=headers)
    assert [item["id"] for item in ancestors.json()] == [company, north, plant]

    renamed = scopes_client.patch(f"/api/scopes/{plant}", json={"name": "Plant One"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Plant One"
    assert renamed.json()["parent_id"] == north

    moved = scopes_client.patch(f"/api/scopes/{plant}", json={"parent_id": south}, headers=headers)
    assert moved.status_code == 200
    assert moved.json()["parent_id"] == south

    assert scopes_client.get("/api/scopes/missing", headers=headers).status_code == 404


def test_parent_must_belong_to_same_org(scopes_client: TestClient) -> None:
    _org_a, token_a = _admin_token(scopes_client, "tenant-scope-a")
    _org_b, token_b = _admin_token(scopes_client, "tenant-scope-b")
    foreign_root = _create_scope(scopes_client, token_b, "B Root", "company")

    response = scopes_client.post(
        "/api/scopes",
        json={"name": "Stray", "level_label": "site", "parent_id": foreign_root},
        headers=_auth_header(token_a),
    )
    assert response.status_code == 404

    foreign_read = scopes_client.get(f"/api/scopes/{foreign_root}", headers=_auth_header(token_a))
    assert foreign_read.status_code == 404


def test_move_under_descendant_is_rejected(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-cycle")
    headers = _auth_header(token)
    top = _create_scope(scopes_client, token, "Top", "company")
    middle = _create_scope(scopes_client, token, "Middle", "region", top)
    leaf = _create_scope(scopes_client, token, "Leaf", "site", middle)

    into_leaf = scopes_client.patch(f"/api/scopes/{top}", json={"parent_id": leaf}, headers=headers)
    assert into_leaf.status_code == 409
    onto_self = scopes_client.patch(f"/api/scopes/{middle}", json={"parent_id": middle}, headers=headers)
    assert onto_self.status_code == 409

    ancestors = scopes_client.get(f"/api/scopes/{leaf}/ancestors", headers=headers)
    assert [item["id"] for item in ancestors.json()] == [top, middle, leaf]


def test_cascade_delete_revokes_assignments(scopes_client: TestClient) -> None:
    org_id, token = _admin_token(scopes_client, "tenant-cascade")
    headers = _auth_header(token)
    top = _create_scope(scopes_client, token, "Top", "company")
    region = _create_scope(scopes_client, token, "Region", "region", top)
    site = _create_scope(scopes_client, token, "Site", "site", region)
    line = _create_scope(scopes_client, token, "Line", "line", site)
    user_id = _create_user(scopes_client, token, "grace")

    replaced = scopes_client.put(
        f"/api/scopes/users/{user_id}/assignments",
        json={"scope_ids": [site, top]},
        headers=headers,
    )
    assert replaced.status_code == 200
    assert {item["scope_id"] for item in replaced.json()} == {site, top}
    assert {item["scope_level"] for item in replaced.json()} == {"site", "company"}

    deleted = scopes_client.delete(f"/api/scopes/{region}", headers=headers)
    assert deleted.status_code == 200
    body = deleted.json()
    assert body["deleted_scope_ids"] == [line, site, region]
    assert body["revoked_assignments"] == 1

    remaining = scopes_client.get(f"/api/scopes/users/{user_id}/assignments", headers=headers)
    assert [item["scope_id"] for item in remaining.json()] == [top]
    with Session(db.get_engine()) as session:
        scope_ids = set(session.exec(select(Scope.id).where(Scope.org_id == org_id)).all())
        assignment_count = len(session.exec(select(UserScopeAssignment)).all())
    assert scope_ids == {top}
    assert assignment_count == 1


def test_cascade_delete_failure_rolls_back(scopes_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    org_id, token = _admin_token(scopes_client, "tenant-cascade-failure")
    headers = _auth_header(token)
    top = _create_scope(scopes_client, token, "Top", "company")
    region = _create_scope(scopes_client, token, "Region", "region", top)
    site = _create_scope(scopes_client, token, "Site", "site", region)
    line = _create_scope(scopes_client, token, "Line", "line", site)
    user_id = _create_user(scopes_client, token, "ivan")
    scopes_client.put(
        f"/api/scopes/users/{user_id}/assignments",
        json={"scope_ids": [site, line]},
        headers=headers,
    )

    original_delete = Session.delete
    deleted_scopes: list[str] = []

    def _delete_failing_on_second_scope(self: Session, instance: object) -> None:
        if isinstance(instance, Scope):
            deleted_scopes.append(instance.id)
            if len(deleted_scopes) == 2:
                raise SQLAlchemyError("disk I/O error")
        original_delete(self, instance)

    monkeypatch.setattr(Session, "delete", _delete_failing_on_second_scope)

    response = scopes_client.delete(f"/api/scopes/{region}", headers=headers)
    assert response.status_code == 500
    assert response.json()["detail"] == GENERIC_ERROR_MESSAGE
    assert "disk I/O error" not in response.text
    assert deleted_scopes == [line, site]

    with Session(db.get_engine()) as session:
        scope_ids = set(session.exec(select(Scope.id).where(Scope.org_id == org_id)).all())
        assigned = set(
            session.exec(select(UserScopeAssignment.scope_id).where(UserScopeAssignment.user_id == user_id)).all()
        )
    assert scope_ids == {top, region, site, line}
    assert assigned == {site, line}


def test_assignment_endpoints(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-assign")
    _other_org, other_token = _admin_token(scopes_client, "tenant-assign-other")
    headers = _auth_header(token)
    top = _create_scope(scopes_client, token, "Top", "company")
    foreign = _create_scope(scopes_client, other_token, "Elsewhere", "company")
    user_id = _create_user(scopes_client, token, "heidi")

    assigned = scopes_client.post(
        f"/api/scopes/users/{user_id}/assignments",
        json={"scope_id": top},
        headers=headers,
    )
    assert assigned.status_code == 201
    again = scopes_client.post(
        f"/api/scopes/users/{user_id}/assignments",
        json={"scope_id": top},
        headers=headers,
    )
    assert again.status_code == 201
    assert again.json()["granted_at"] == assigned.json()["granted_at"]

    cross = scopes_client.post(
        f"/api/scopes/users/{user_id}/assignments",
        json={"scope_id": foreign},
        headers=headers,
    )
    assert cross.status_code == 404

    revoked = scopes_client.delete(f"/api/scopes/users/{user_id}/assignments/{top}", headers=headers)
    assert revoked.status_code == 204
    missing = scopes_client.delete(f"/api/scopes/users/{user_id}/assignments/{top}", headers=headers)
    assert missing.status_code == 404


def test_all_trees_requires_global_admin(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-all")
    _create_scope(scopes_client, token, "Top", "company")
    platform_id, _user_id = bootstrap_global_admin("platform-scopes", "root", "root-pass")
    root_token = _login(scopes_client, platform_id, "root", "root-pass")

    denied = scopes_client.get("/api/scopes/tree/all", headers=_auth_header(token))
    assert denied.status_code == 403

    allowed = scopes_client.get("/api/scopes/tree/all", headers=_auth_header(root_token))
    assert allowed.status_code == 200
    assert [(item["org_name"], [node["name"] for node in item["roots"]]) for item in allowed.json()] == [
        ("tenant-all", ["Top"])
    ]


def test_malformed_tree_returns_generic_error(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-broken")
    top = _create_scope(scopes_client, token, "Top", "company")
    child = _create_scope(scopes_client, token, "Child", "region", top)

    with Session(db.get_engine()) as session:
        root = session.get(Scope, top)
        assert root is not None
        root.parent_id = child
        session.add(root)
        session.commit()

    response = scopes_client.get("/api/scopes/tree", headers=_auth_header(token))
    assert response.status_code == 500
    assert response.json()["detail"] == GENERIC_ERROR_MESSAGE
    assert child not in response.text


def test_scope_labels_fall_back_to_defaults(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-labels")
    _other_org, other_token = _admin_token(scopes_client, "tenant-labels-other")
    headers = _auth_header(token)

    initial = scopes_client.get("/api/scopes/labels", headers=headers)
    assert initial.status_code == 200
    assert [(item["level"], item["label"], item["is_default"]) for item in initial.json()][:2] == [
        (1, "Level 1", True),
        (2, "Level 2", True),
    ]
    assert len(initial.json()) == 7

    single = scopes_client.put("/api/scopes/labels/1", json={"label": " Company "}, headers=headers)
    assert single.status_code == 200
    assert single.json()["label"] == "Company"
    assert single.json()["is_default"] is False

    batch = scopes_client.put(
        "/api/scopes/labels",
        json={
            "labels": [
                {"level": 2, "label": "Region"},
                {"level": 1, "label": "Group"},
                {"level": 2, "label": "Area"},
            ]
        },
        headers=headers,
    )
    assert batch.status_code == 200
    assert [(item["level"], item["label"]) for item in batch.json()] == [(1, "Group"), (2, "Area")]

    labels = {item["level"]: item for item in scopes_client.get("/api/scopes/labels", headers=headers).json()}
    assert labels[1]["label"] == "Group"
    assert labels[1]["id"] == single.json()["id"]
    assert labels[3]["is_default"] is True

    others = scopes_client.get("/api/scopes/labels", headers=_auth_header(other_token)).json()
    assert all(item["is_default"] for item in others)

    assert scopes_client.put("/api/scopes/labels/8", json={"label": "Too deep"}, headers=headers).status_code == 404
    assert scopes_client.put("/api/scopes/labels/3", json={"label": "   "}, headers=headers).status_code == 409

    assert scopes_client.delete("/api/scopes/labels/2", headers=headers).status_code == 204
    assert scopes_client.delete("/api/scopes/labels/2", headers=headers).status_code == 404
    restored = {item["level"]: item for item in scopes_client.get("/api/scopes/labels", headers=headers).json()}
    assert restored[2]["label"] == "Level 2"
    assert restored[2]["is_default"] is True


def test_scope_users_lists_direct_grants(scopes_client: TestClient) -> None:
    _org_id, token = _admin_token(scopes_client, "tenant-scope-users")
    _other_org, other_token = _admin_token(scopes_client, "tenant-scope-users-other")
    headers = _auth_header(token)
    top = _create_scope(scopes_client, token, "Top", "company")
    site = _create_scope(scopes_client, token, "Site", "site", top)
    judy = _create_user(scopes_client, token, "judy")
    karl = _create_user(scopes_client, token, "karl")
    for user_id, scope_id in ((judy, site), (karl, site), (karl, top)):
        assigned = scopes_client.post(
            f"/api/scopes/users/{user_id}/assignments",
            json={"scope_id": scope_id},
            headers=headers,
        )
        assert assigned.status_code == 201

    on_site = scopes_client.get(f"/api/scopes/{site}/assignments", headers=headers)
    assert on_site.status_code == 200
    assert {item["user_id"] for item in on_site.json()} == {judy, karl}
    on_top = scopes_client.get(f"/api/scopes/{top}/assignments", headers=headers)
    assert [item["user_id"] for item in on_top.json()] == [karl]

    foreign = scopes_client.get(f"/api/scopes/{site}/assignments", headers=_auth_header(other_token))
    assert foreign.status_code == 404

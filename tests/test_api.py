import pytest
from httpx import AsyncClient, ASGITransport

from console_service.app.main import app, get_session


@pytest.fixture(autouse=True)
async def override_session(session_factory):
    async def _get_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _get_session
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_user(client, login: str) -> str:
    r = await client.post(
        "/users",
        json={
            "login": login,
            "email": f"{login}@example.com",
            "last_name": login.capitalize(),
            "first_name": "Test",
        },
    )
    assert r.status_code == 201, r.text
    return r.json()["id"]


async def create_group(client, name: str) -> str:
    r = await client.post("/groups", json={"name": name})
    assert r.status_code == 201, r.text
    return r.json()["id"]


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_user_crud_and_conflicts(client):
    user_id = await create_user(client, "alice")

    r = await client.get(f"/users/{user_id}")
    assert r.status_code == 200
    data = r.json()
    assert data["login"] == "alice"
    assert data["full_name"] == "Alice Test"
    assert "password" not in data

    r = await client.post(
        "/users",
        json={"login": "alice", "email": "other@example.com", "last_name": "A", "first_name": "B"},
    )
    assert r.status_code == 409

    r = await client.put(f"/users/{user_id}", json={"department": "R&D"})
    assert r.status_code == 200
    assert r.json()["department"] == "R&D"

    r = await client.get("/users", params={"search": "ali"})
    assert r.status_code == 200
    assert r.json()["meta"]["total"] == 1

    r = await client.delete(f"/users/{user_id}")
    assert r.status_code == 204
    r = await client.get(f"/users/{user_id}")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_invalid_email_rejected(client):
    r = await client.post(
        "/users",
        json={"login": "bob", "email": "not-an-email", "last_name": "B", "first_name": "B"},
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_group_members_and_nesting_errors(client):
    a = await create_group(client, "A")
    b = await create_group(client, "B")
    user_id = await create_user(client, "alice")

    r = await client.post(f"/groups/{a}/members", json={"member_type": "user", "member_id": user_id})
    assert r.status_code == 201
    r = await client.post(f"/groups/{a}/members", json={"member_type": "user", "member_id": user_id})
    assert r.status_code == 409

    r = await client.post(f"/groups/{a}/members", json={"member_type": "group", "member_id": b})
    assert r.status_code == 201
    r = await client.post(f"/groups/{b}/members", json={"member_type": "group", "member_id": a})
    assert r.status_code == 400
    r = await client.post(f"/groups/{a}/members", json={"member_type": "group", "member_id": a})
    assert r.status_code == 400
    r = await client.post(f"/groups/{a}/members", json={"member_type": "group", "member_id": "nope"})
    assert r.status_code == 404

    r = await client.get(f"/groups/{a}")
    assert r.status_code == 200
    assert [(m["type"], m["id"]) for m in r.json()["members"]] == [("user", user_id), ("group", b)]

    r = await client.get(f"/users/{user_id}/groups")
    assert [g["id"] for g in r.json()] == [a]

    r = await client.get("/groups/integrity")
    assert r.json() == {"acyclic": True, "cycle": []}

    r = await client.delete(f"/groups/{a}/members/group/{b}")
    assert r.json() == {"removed": 1}
    r = await client.delete(f"/groups/{a}/members/group/{b}")
    assert r.json() == {"removed": 0}


@pytest.mark.asyncio
async def test_group_candidates(client):
    a = await create_group(client, "A")
    b = await create_group(client, "B")
    c = await create_group(client, "C")
    await client.post(f"/groups/{a}/members", json={"member_type": "group", "member_id": b})
    await client.post(f"/groups/{c}/members", json={"member_type": "group", "member_id": a})

    r = await client.get(f"/groups/{a}/candidates")
    assert [g["id"] for g in r.json()] == [c]

    r = await client.get(f"/groups/{a}/candidates", params={"transitive": "true"})
    assert r.json() == []

    r = await client.get("/groups/missing/candidates")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_access_rights_flow(client):
    group_id = await create_group(client, "Engineering")
    user_id = await create_user(client, "alice")
    await client.post(
        f"/groups/{group_id}/members", json={"member_type": "user", "member_id": user_id}
    )

    r = await client.post("/services", json={"name": "CI"})
    assert r.status_code == 201
    service_id = r.json()["id"]
    r = await client.post("/resources", json={"service_id": service_id, "name": "Deploy Console"})
    assert r.status_code == 201
    resource_id = r.json()["id"]

    r = await client.post(
        "/access",
        json={"user_type": "GROUP", "source": group_id, "type": "WRITE", "name": "Deploy Write"},
    )
    assert r.status_code == 201
    access_id = r.json()["id"]

    r = await client.post(
        "/access",
        json={"user_type": "USER", "source": group_id, "type": "READ", "name": "Broken"},
    )
    assert r.status_code == 404

    r = await client.post("/access/save", json={"resource_id": resource_id, "access_ids": [access_id, access_id]})
    assert r.status_code == 200
    assert r.json() == {"success": True, "resource_id": resource_id, "access_ids": [access_id]}

    r = await client.get(f"/users/{user_id}/access-rights")
    assert r.status_code == 200
    assert r.json() == [
        {
            "resource_name": "Deploy Console",
            "service_name": "CI",
            "access_type": "WRITE",
            "permission": "Deploy Write",
            "assigned_through": f"Группа {group_id}",
        }
    ]

    r = await client.get(f"/resources/{resource_id}/access")
    assert [a["id"] for a in r.json()["accesses"]] == [access_id]

    r = await client.get("/access/search", params={"q": "deploy"})
    assert [a["id"] for a in r.json()] == [access_id]

    r = await client.delete(f"/access/{access_id}")
    assert r.json() == {"success": True, "removed": 1}
    r = await client.get(f"/users/{user_id}/access-rights")
    assert r.json() == []

    r = await client.get("/users/missing/access-rights")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_save_access_unknown_ids(client):
    r = await client.post("/access/save", json={"resource_id": "missing", "access_ids": []})
    assert r.status_code == 404

    r = await client.post("/services", json={"name": "CI"})
    service_id = r.json()["id"]
    r = await client.post("/resources", json={"service_id": service_id, "name": "R"})
    resource_id = r.json()["id"]

    r = await client.post("/access/save", json={"resource_id": resource_id, "access_ids": ["missing"]})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_services_and_resources(client):
    r = await client.post("/services", json={"name": "CI", "description": "builds"})
    service_id = r.json()["id"]
    assert r.json()["resources"] == []
    r = await client.post("/services", json={"name": "CI"})
    assert r.status_code == 409

    r = await client.post("/resources", json={"service_id": service_id, "name": "Runner"})
    resource_id = r.json()["id"]
    r = await client.post("/resources", json={"service_id": "missing", "name": "X"})
    assert r.status_code == 404

    r = await client.get(f"/services/{service_id}")
    assert [res["id"] for res in r.json()["resources"]] == [resource_id]

    r = await client.get("/services/by-name/CI")
    assert r.json()["id"] == service_id

    r = await client.post(f"/services/{service_id}/toggle")
    assert r.json()["enabled"] is False

    r = await client.put(f"/resources/{resource_id}", json={"type": "pipeline"})
    assert r.json()["type"] == "pipeline"

    r = await client.delete(f"/services/{service_id}")
    assert r.status_code == 204
    r = await client.get(f"/resources/{resource_id}")
    assert r.status_code == 404
    r = await client.get("/services")
    assert r.json() == []


@pytest.mark.asyncio
async def test_update_rejects_null_for_required_fields(client):
    group_id = await create_group(client, "A")
    user_id = await create_user(client, "alice")
    r = await client.post("/services", json={"name": "CI"})
    service_id = r.json()["id"]
    r = await client.post("/resources", json={"service_id": service_id, "name": "R"})
    resource_id = r.json()["id"]

    for path, body in [
        (f"/groups/{group_id}", {"name": None}),
        (f"/users/{user_id}", {"login": None}),
        (f"/users/{user_id}", {"email": None}),
        (f"/services/{service_id}", {"enabled": None}),
        (f"/resources/{resource_id}", {"service_id": None}),
    ]:
        r = await client.put(path, json=body)
        assert r.status_code == 422, (path, body, r.text)

    r = await client.put(f"/groups/{group_id}", json={"description": None})
    assert r.status_code == 200
    r = await client.get(f"/groups/{group_id}")
    assert r.json()["name"] == "A"

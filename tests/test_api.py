import os
import asyncio
import tempfile

import aiohttp
import pytest
import uvicorn

from models import Base
from main import app
from database import get_session, make_engine, make_sessionmaker

pytestmark = pytest.mark.asyncio(loop_scope="session")


@pytest.fixture(scope="session")
async def test_engine_and_sessionmaker():
    """Temporary database for the whole session"""
    fd, db_path = tempfile.mkstemp(prefix="recipes_test_", suffix=".db")
    os.close(fd)

    engine = make_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = make_sessionmaker(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine, session_maker

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
    except Exception:
        pass

    try:
        os.remove(db_path)
    except (FileNotFoundError, PermissionError):
        pass


@pytest.fixture(scope="session")
async def app_with_overrides(test_engine_and_sessionmaker):
    """Point the get_session dependency at the test database"""
    _, session_maker = test_engine_and_sessionmaker

    async def override_get_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = override_get_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
async def live_server(app_with_overrides):
    """
    uvicorn without the lifespan events; the fixture above already
    created the tables
    """
    host, port = "127.0.0.1", 8001

    config = uvicorn.Config(
        app_with_overrides,
        host=host,
        port=port,
        log_level="error",
        loop="asyncio",
        lifespan="off",
    )
    server = uvicorn.Server(config)

    async def _run():
        await server.serve()

    task = asyncio.create_task(_run())

    base_url = f"http://{host}:{port}"
    timeout = aiohttp.ClientTimeout(total=5)

    server_ready = False
    async with aiohttp.ClientSession(timeout=timeout) as sess:
        for attempt in range(50):
            try:
                async with sess.get(f"{base_url}/docs") as resp:
                    if resp.status in (200, 404):
                        server_ready = True
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError):
                pass
            await asyncio.sleep(0.2)

    if not server_ready:
        server.should_exit = True
        try:
            await asyncio.wait_for(task, timeout=2)
        except (TimeoutError, asyncio.CancelledError):
            task.cancel()
        pytest.fail("Test server did not start within 10 seconds")

    try:
        yield base_url
    finally:
        server.should_exit = True
        try:
            await asyncio.wait_for(task, timeout=3)
        except (TimeoutError, asyncio.CancelledError):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


@pytest.fixture
async def client():
    timeout = aiohttp.ClientTimeout(total=30)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        yield session


async def post_json(client, url, payload, expected=201):
    async with client.post(url, json=payload) as resp:
        assert resp.status == expected, await resp.text()
        return await resp.json()


async def test_health_check(live_server: str, client):
    async with client.get(f"{live_server}/docs") as resp:
        assert resp.status == 200, f"Server is not answering: {resp.status}"


async def test_recipe_lifecycle(live_server: str, client):
    """
    Create, list, update, rate, filter, favorite and finally delete a recipe
    """
    base = live_server

    basil = await post_json(client, f"{base}/ingredients", {"name": "Basil"})
    pine = await post_json(client, f"{base}/ingredients", {"name": "Pine nuts"})
    user = await post_json(client, f"{base}/accounts", {"username": "ana", "password": "pw"})
    assert "password" not in user

    payload = {
        "name": "Pesto",
        "description": "Blend.",
        "prep_time": 10,
        "cuisine_type": "Ligurian",
        "ingredients": [
            {"ingredient_id": basil["id"], "quantity": 50, "unit": "g"},
            {"ingredient_id": pine["id"], "quantity": 20, "unit": "g"},
        ],
    }
    created = await post_json(client, f"{base}/recipes", payload)
    rid = created["id"]
    assert created["cuisine_type"] == "Ligurian"
    assert {i["name"] for i in created["ingredients"]} == {"Basil", "Pine nuts"}
    assert created["ratings"] == []

    async with client.get(f"{base}/recipes") as resp:
        assert resp.status == 200
        items = await resp.json()
        assert items[0]["id"] == rid

    payload["ingredients"] = [{"ingredient_id": basil["id"], "quantity": 80, "unit": "g"}]
    payload["name"] = "Basil pesto"
    async with client.put(f"{base}/recipes/{rid}", json=payload) as resp:
        assert resp.status == 200
        updated = await resp.json()
        assert updated["name"] == "Basil pesto"
        assert [(i["name"], i["quantity"]) for i in updated["ingredients"]] == [("Basil", 80)]

    rating_url = f"{base}/recipes/{rid}/ratings/{user['id']}"
    async with client.get(rating_url) as resp:
        assert resp.status == 200
        assert await resp.json() is None
    for score in (2, 5):
        async with client.put(rating_url, json={"score": score}) as resp:
            assert resp.status == 200
            assert (await resp.json())["score"] == score
    async with client.get(rating_url) as resp:
        assert (await resp.json())["score"] == 5

    params = {"cuisine_type": "ligurian", "min_rating": "4"}
    async with client.get(f"{base}/recipes/filtered", params=params) as resp:
        assert resp.status == 200
        assert [r["id"] for r in await resp.json()] == [rid]
    params = {"cuisine_type": "ligurian", "min_rating": "5.5"}
    async with client.get(f"{base}/recipes/filtered", params=params) as resp:
        assert await resp.json() == []

    favorite_url = f"{base}/recipes/{rid}/favorites/{user['id']}"
    for _ in range(2):
        async with client.put(favorite_url) as resp:
            assert resp.status == 200
            assert (await resp.json())["favorited"] is True
    async with client.get(f"{base}/accounts/{user['id']}/favorites") as resp:
        assert await resp.json() == [rid]
    async with client.get(f"{base}/accounts/{user['id']}/favorite-recipes") as resp:
        assert [r["id"] for r in await resp.json()] == [rid]

    async with client.delete(f"{base}/recipes/{rid}") as resp:
        assert resp.status == 200
        assert await resp.json() == {"success": True, "id": rid}

    async with client.get(f"{base}/recipes") as resp:
        assert all(r["id"] != rid for r in await resp.json())
    async with client.get(f"{base}/accounts/{user['id']}/favorites") as resp:
        assert await resp.json() == []
    async with client.get(rating_url) as resp:
        assert await resp.json() is None


async def test_unfavorite_absent_pair(live_server: str, client):
    base = live_server
    user = await post_json(client, f"{base}/accounts", {"username": "bo", "password": "pw"})
    recipe = await post_json(
        client, f"{base}/recipes", {"name": "Toast", "prep_time": 3, "ingredients": []}
    )

    async with client.delete(f"{base}/recipes/{recipe['id']}/favorites/{user['id']}") as resp:
        assert resp.status == 200
        assert (await resp.json())["favorited"] is False


@pytest.mark.parametrize(
    "url,payload",
    (
        ("/recipes", {"name": "No ingredients", "prep_time": 25}),
        ("/recipes", {"name": "No time", "ingredients": []}),
        (
            "/recipes",
            {
                "name": "Twice",
                "prep_time": 5,
                "ingredients": [
                    {"ingredient_id": 1, "quantity": 1, "unit": "g"},
                    {"ingredient_id": 1, "quantity": 2, "unit": "g"},
                ],
            },
        ),
        ("/ingredients", {"name": ""}),
        ("/accounts", {"username": "x", "password": ""}),
    ),
)
async def test_validation_errors(live_server: str, client, url, payload):
    async with client.post(f"{live_server}{url}", json=payload) as resp:
        assert resp.status == 422


async def test_rating_out_of_range(live_server: str, client):
    async with client.put(f"{live_server}/recipes/1/ratings/1", json={"score": 6}) as resp:
        assert resp.status == 422


async def test_delete_nonexistent_recipe(live_server: str, client):
    async with client.delete(f"{live_server}/recipes/999999") as resp:
        assert resp.status == 404
        body = await resp.json()
        assert body == {
            "detail": "Failed to delete recipe",
            "kind": "not_found",
            "retryable": False,
        }


async def test_create_recipe_with_unknown_ingredient(live_server: str, client):
    payload = {
        "name": "Mystery",
        "prep_time": 5,
        "ingredients": [{"ingredient_id": 999999, "quantity": 1, "unit": "g"}],
    }
    async with client.post(f"{live_server}/recipes", json=payload) as resp:
        assert resp.status == 409
        body = await resp.json()
        assert body["detail"] == "Failed to create recipe"
        assert body["kind"] == "constraint"


async def test_active_user_travels_with_request(live_server: str, client):
    base = live_server
    user = await post_json(client, f"{base}/accounts", {"username": "cat", "password": "pw"})

    async with client.put(f"{base}/accounts/active", json={"user_id": user["id"]}) as resp:
        assert resp.status == 200
        assert await resp.json() == {"user_id": user["id"]}

    headers = {"X-User-Id": str(user["id"])}
    async with client.get(f"{base}/accounts/active", headers=headers) as resp:
        assert await resp.json() == {"data": user["id"]}
    async with client.get(f"{base}/accounts/active") as resp:
        assert await resp.json() == {"data": None}

    async with client.delete(f"{base}/accounts/{user['id']}", headers=headers) as resp:
        assert resp.status == 200
        body = await resp.json()
        assert body["id"] == user["id"]
        assert body["active_user_cleared"] is True

    async with client.get(f"{base}/accounts") as resp:
        assert all(u["id"] != user["id"] for u in await resp.json())

    async with client.put(f"{base}/accounts/active", json={"user_id": user["id"]}) as resp:
        assert resp.status == 404


async def test_ingredients_listed_by_name(live_server: str, client):
    base = live_server
    await post_json(client, f"{base}/ingredients", {"name": "Zucchini"})
    await post_json(client, f"{base}/ingredients", {"name": "Anchovy"})

    async with client.get(f"{base}/ingredients") as resp:
        names = [i["name"] for i in await resp.json()]
        assert names == sorted(names)
        assert {"Zucchini", "Anchovy"} <= set(names)

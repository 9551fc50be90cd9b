import asyncio

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from storefront import auth
from storefront.cache import ProductCache
from storefront.main import create_app
from storefront.seed import seed_demo_data
from storefront.storage import DatabaseStorage, MemStorage


@pytest_asyncio.fixture(params=["memory", "database"])
async def storage(request, tmp_path):
    if request.param == "memory":
        yield MemStorage()
        return
    db = DatabaseStorage.from_url(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await db.create_schema()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def seeded(storage):
    await seed_demo_data(storage)
    return storage


@pytest.fixture
def mem_storage():
    storage = MemStorage()
    asyncio.run(seed_demo_data(storage))
    return storage


@pytest.fixture
def client(mem_storage):
    app = create_app(storage=mem_storage, cache=ProductCache(None))
    with TestClient(app) as client:
        yield client


def login(client, username, password):
    response = client.post("/login", data={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, "admin", "admin123")


@pytest.fixture
def owner_headers(client):
    return login(client, "lojista", "lojista123")


@pytest.fixture
def customer_headers(client):
    return login(client, "cliente", "cliente123")


def headers_for(user):
    return {"Authorization": f"Bearer {auth.token_for(user).access_token}"}

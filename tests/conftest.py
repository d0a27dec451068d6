"""
Shared fixtures: an in-memory store, the default registry, the services built
on top of them, a seeded taxonomy and an HTTP client.
"""

import pytest
from fastapi.testclient import TestClient

from auth import hash_password
from main import create_app
from registry import build_registry
from resolver import RelationResolver
from compiler import QueryCompiler
from lifecycle import LifecycleManager
from service import build_services
from storage import MemoryStorage


class RecordingSink:
    """Orphan sink that keeps every event for assertions."""

    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def orphans():
    return RecordingSink()


@pytest.fixture
def resolver(registry):
    return RelationResolver(registry)


@pytest.fixture
def compiler(registry, resolver):
    return QueryCompiler(registry, resolver)


@pytest.fixture
def lifecycle(registry, storage, resolver, orphans):
    return LifecycleManager(registry, storage, resolver, orphans)


@pytest.fixture
def services(registry, storage, orphans):
    return build_services(registry, storage, orphans)


@pytest.fixture
def taxonomy(storage):
    c1 = storage.insert("categories", {"name": "Jogging", "status": "A"})
    c2 = storage.insert("categories", {"name": "Formal", "status": "A"})
    s1 = storage.insert("subcategories", {"name": "Top", "category": c1, "status": "A"})
    s2 = storage.insert("subcategories", {"name": "Shirts", "category": c2, "status": "A"})
    return {"c1": c1, "c2": c2, "s1": s1, "s2": s2}


@pytest.fixture
def actor(storage):
    return storage.insert("users", {
        "name": "Jhon",
        "email": "jhony@mail.com",
        "password": hash_password("secret123"),
        "login_type": "basic",
        "status": "A",
    })


@pytest.fixture
def client(storage, orphans):
    app = create_app(storage=storage, orphans=orphans)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers(client, actor):
    res = client.post("/auth/login", json={"email": "jhony@mail.com", "password": "secret123"})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}

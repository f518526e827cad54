import os
import uuid

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["STORAGE_BACKEND"] = "memory"

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import MemoryStore, MongoStore
from main import create_app

ADMIN = {"username": "admin", "password": "admin123"}


@pytest.fixture
def settings():
    return Settings(session_secret="test-secret", google_maps_api_key="maps-test-key")


@pytest.fixture(params=["memory", "mongo"])
def store(request):
    """Empty store; every test using it runs against both backends."""
    if request.param == "mongo":
        return MongoStore(mongomock.MongoClient(tz_aware=True)[f"busTracker_{uuid.uuid4().hex}"])
    return MemoryStore()


@pytest.fixture
def app(settings, store):
    return create_app(settings=settings, store=store)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def new_client(app):
    """Factory for extra clients, each with its own cookie jar."""
    def make():
        return TestClient(app)
    return make


def login(client, username, password):
    return client.post("/api/auth/login", json={"username": username, "password": password})


def register(client, username="alice", email=None, password="secret123", **extra):
    body = {
        "name": username.title(),
        "email": email or f"{username}@iitj.ac.in",
        "username": username,
        "password": password,
    }
    body.update(extra)
    return client.post("/api/auth/register", json=body)


@pytest.fixture
def admin_client(new_client):
    c = new_client()
    assert login(c, **ADMIN).status_code == 200
    return c


@pytest.fixture
def student_client(new_client):
    c = new_client()
    assert register(c, "stud").status_code == 201
    assert login(c, "stud", "secret123").status_code == 200
    return c


@pytest.fixture
def driver_client(new_client, admin_client):
    resp = admin_client.post("/api/admin/create-driver", json={
        "name": "Driver One",
        "email": "driver1@iitj.ac.in",
        "username": "driver1",
        "password": "drive123",
        "busId": 1,
    })
    assert resp.status_code == 201
    c = new_client()
    assert login(c, "driver1", "drive123").status_code == 200
    return c

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from database import InMemoryKeyValueStore, get_store
from main import app, get_clock
from repository import ProfileRepository, SubjectRepository, TaskRepository

from .fakes import FixedClock


@pytest.fixture()
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture()
def tasks(store, clock) -> TaskRepository:
    return TaskRepository(store, clock)


@pytest.fixture()
def subjects(store, tasks, clock) -> SubjectRepository:
    return SubjectRepository(store, tasks, clock)


@pytest.fixture()
def profiles(store, clock) -> ProfileRepository:
    return ProfileRepository(store, clock)


@pytest.fixture()
def client(store, clock):
    """TestClient wired to the per-test store and clock."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def signup_and_login(client: TestClient, email: str, name: str = "Student") -> dict[str, str]:
    res = client.post("/auth/signup", json={"email": email, "password": "secret123", "name": name})
    assert res.status_code == 200, res.text
    res = client.post("/auth/login", json={"email": email, "password": "secret123"})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture()
def auth_headers(client) -> dict[str, str]:
    return signup_and_login(client, "alice@example.com", "Alice")

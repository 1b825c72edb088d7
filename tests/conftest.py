import itertools

import pytest
from fastapi.testclient import TestClient

from boardsync.config import Settings
from boardsync.main import create_app

_emails = itertools.count(1)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'boardsync.db'}",
        jwt_secret="test-secret",
        app_env="development",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def register(client):
    """Register a user and return its id, token and auth headers."""

    def _register(name: str = "Alice"):
        email = f"{name.lower()}{next(_emails)}@example.com"
        res = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": "secret123"},
        )
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        return {
            "id": data["user"]["id"],
            "email": email,
            "token": data["token"],
            "headers": {"Authorization": f"Bearer {data['token']}"},
        }

    return _register


@pytest.fixture
def make_board(client):
    def _make_board(owner, name: str = "Roadmap", members=()):
        res = client.post("/api/boards", json={"name": name}, headers=owner["headers"])
        assert res.status_code == 201, res.text
        board = res.json()["data"]
        for member in members:
            added = client.post(
                f"/api/boards/{board['id']}/members",
                json={"email": member["email"]},
                headers=owner["headers"],
            )
            assert added.status_code == 200, added.text
        return board

    return _make_board


@pytest.fixture
def make_task(client):
    def _make_task(user, list_id: str, title: str = "Write docs", **extra):
        res = client.post("/api/tasks", json={"title": title, "listId": list_id, **extra}, headers=user["headers"])
        assert res.status_code == 201, res.text
        return res.json()["data"]

    return _make_task

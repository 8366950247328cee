from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from beacon.db import Store, create_store
from beacon.deps import Services, build_services
from beacon.main import create_app
from beacon.models import User
from beacon.settings import Settings


class FakeConnection:
    """Stands in for a websocket on the event bus."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["event"] == name]


def make_user(store: Store, username: str) -> User:
    with store.session() as s:
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash="!",
            api_key=f"key-{username}",
        )
        s.add(user)
        s.commit()
        s.refresh(user)
        return user


@pytest.fixture
def test_settings() -> Settings:
    return Settings(database_url="sqlite://", mqtt_enabled=False, log_level="WARNING")


@pytest.fixture
def store() -> Store:
    s = create_store("sqlite://")
    s.init_db()
    return s


@pytest.fixture
def services(test_settings: Settings, store: Store) -> Services:
    return build_services(test_settings, store)


@pytest.fixture
def alice(store: Store) -> User:
    return make_user(store, "alice")


@pytest.fixture
def bob(store: Store) -> User:
    return make_user(store, "bob")


@pytest.fixture
def client(test_settings: Settings, store: Store):
    app = create_app(test_settings, store=store)
    with TestClient(app) as c:
        yield c


def auth_headers(user: User) -> dict[str, str]:
    return {"X-API-Key": user.api_key}

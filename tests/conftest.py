from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Iterator

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="chat-uploads-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketState

from auth import create_session
from config import SESSION_COOKIE_NAME
from database import Base, make_session_factory
from main import create_app
from models import User, default_avatar
from relay import Relay
from store import MessageStore


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll until the server side catches up with a socket the test closed."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeSocket:
    """Stands in for a server-side WebSocket; records every frame sent to it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict) -> None:
        if self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    def close(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED


@pytest.fixture()
def engine() -> Iterator:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return make_session_factory(engine)


@pytest.fixture()
def store(session_factory) -> MessageStore:
    return MessageStore(session_factory)


@pytest.fixture()
def relay(store, session_factory) -> Relay:
    return Relay(store, session_factory)


@pytest.fixture()
def make_user(session_factory):
    """Create a user row and a live session; returns (user_id, cookie token)."""

    def _make(username: str, user_id: str | None = None) -> tuple[str, str]:
        with session_factory() as db:
            user = User(
                username=username,
                email=f"{username}@example.com",
                avatar_url=default_avatar(username),
            )
            if user_id is not None:
                user.id = user_id
            db.add(user)
            db.commit()
            token = create_session(db, user.id)
            return user.id, token

    return _make


@pytest.fixture()
def app(session_factory):
    return create_app(session_factory)


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def connect(app):
    """Open a realtime socket carrying the given session token.

    The client is entered so every socket shares one event loop, like a real
    server process.
    """
    with TestClient(app) as ws_client:

        def _connect(token: str | None = None):
            headers = {"cookie": f"{SESSION_COOKIE_NAME}={token}"} if token else {}
            return ws_client.websocket_connect("/ws", headers=headers)

        yield _connect

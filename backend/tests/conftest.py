"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

# Keep application startup away from the on-disk default database.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from app.core.security import create_access_token
from app.database import enable_sqlite_foreign_keys
from app.main import app
from app.models import Base, User
from app.services import chat_store as shared_store
from app.services.chat_store import ChatStore
from aether.realtime.managers import ChannelConnectionManager, ClientConnection


class DummyWebSocket:
    """Stand-in for a connected Starlette websocket that records frames."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self, name: str) -> list[Any]:
        return [frame.get("data") for frame in self.sent if frame.get("type") == name]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, expire_on_commit=False, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(session_factory) -> ChatStore:
    """A chat store private to the test."""

    return ChatStore(session_factory)


@pytest.fixture()
def make_user(session_factory) -> Callable[..., str]:
    """Insert a user row and return its identifier."""

    def factory(username: str, **fields: Any) -> str:
        with session_factory() as session:
            user = User(username=username, **fields)
            session.add(user)
            session.commit()
            return user.id

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[str], dict[str, str]]:
    def build(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}

    return build


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient whose shared store points at the test database."""

    original = shared_store._session_factory
    shared_store.bind(session_factory)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        shared_store.bind(original)


@pytest.fixture()
def connections() -> ChannelConnectionManager:
    """A local-only connection registry."""

    return ChannelConnectionManager(node_id="test-node")


@pytest.fixture()
def make_connection(store) -> Callable[[str], ClientConnection]:
    """Build an unregistered connection for an existing user."""

    def factory(user_id: str) -> ClientConnection:
        user = store.require_user(user_id)
        return ClientConnection(user_id=user.id, username=user.username, websocket=DummyWebSocket())

    return factory

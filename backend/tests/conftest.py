"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base
from app.monitoring.registry import registry
from app.services.room_store import SqlRoomStore, get_room_store
from nooke.identity import Identity
from nooke.realtime.transport import LocalChangeFeed


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def change_feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture()
def room_store(session_factory, change_feed) -> SqlRoomStore:
    """Room store over the in-memory database with an in-process feed."""

    return SqlRoomStore(session_factory, change_feed)


@pytest.fixture()
def client(session_factory, room_store) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with database dependencies overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_room_store] = lambda: room_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def alice() -> Identity:
    return Identity(user_id="alice", display_name="Alice")


@pytest.fixture()
def bob() -> Identity:
    return Identity(user_id="bob", display_name="Bob")


def bearer_headers(user_id: str, name: str | None = None) -> dict[str, str]:
    claims = {"sub": user_id}
    if name:
        claims["name"] = name
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture()
def auth_headers():
    """Factory building bearer headers for a user id."""

    return bearer_headers

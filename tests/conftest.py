# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Generator, Iterator
from itertools import count
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-signalhub")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from signalhub.core.security import create_access_token
from signalhub.db.session import Base
from signalhub.db.session import get_db as app_get_session
from signalhub.db.time import utcnow
from signalhub.main import app as fastapi_app
from signalhub.models import Conversation, ConversationKind, ConversationMember, User
from signalhub.models.conversation import direct_pair_key
from signalhub.services.errors import NotConnectedError
from signalhub.services.hub import SignalHub
from signalhub.services.registry import Connection
from signalhub.services.store import SqlStore

_USERNAME_COUNTER = count(1)

# Fast but realistic timings for hubs driven by the real clock.
FAST_TIMINGS: dict[str, float] = {
    "ring_timeout": 5.0,
    "reconnect_delay": 0.2,
    "reconnect_grace": 0.3,
    "presence_offline_delay": 0.1,
    "tick": 0.01,
}


class FakeClock:
    """Manually advanced wall clock for timer tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every frame pushed to one simulated client."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.fail = False

    async def send_json(self, frame: dict[str, Any]) -> None:
        if self.fail:
            raise NotConnectedError("transport closed")
        self.frames.append(frame)

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.frames]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [frame["data"] for frame in self.frames if frame["event"] == event]

    def clear(self) -> None:
        self.frames.clear()


@pytest.fixture()
def engine(tmp_path: Any) -> Generator[Engine, None, None]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'signalhub-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> SqlStore:
    return SqlStore(session_factory)


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    """Return a factory persisting users with unique usernames."""

    def _make(display_name: str | None = None) -> User:
        user = User(
            username=f"user-{next(_USERNAME_COUNTER)}",
            display_name=display_name,
            created_at=utcnow(),
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_conversation(db_session: Session) -> Callable[..., Conversation]:
    """Return a factory persisting conversations with their members."""

    def _make(
        kind: ConversationKind,
        members: list[User],
        admin: User | None = None,
        title: str | None = None,
    ) -> Conversation:
        ids = [member.id for member in members]
        conversation = Conversation(
            kind=kind.value,
            title=title,
            admin_user_id=admin.id if admin is not None else None,
            direct_key=direct_pair_key(*ids) if kind == ConversationKind.DIRECT else None,
            created_at=utcnow(),
        )
        db_session.add(conversation)
        db_session.flush()
        for user_id in ids:
            db_session.add(ConversationMember(conversation_id=conversation.id, user_id=user_id))
        db_session.commit()
        db_session.refresh(conversation)
        return conversation

    return _make


@pytest.fixture()
def alice(make_user: Callable[..., User]) -> User:
    return make_user("Alice")


@pytest.fixture()
def bob(make_user: Callable[..., User]) -> User:
    return make_user("Bob")


@pytest.fixture()
def carol(make_user: Callable[..., User]) -> User:
    return make_user("Carol")


@pytest.fixture()
def direct(make_conversation: Callable[..., Conversation], alice: User, bob: User) -> Conversation:
    """Direct conversation between Alice and Bob."""
    return make_conversation(ConversationKind.DIRECT, [alice, bob])


@pytest.fixture()
def group(
    make_conversation: Callable[..., Conversation], alice: User, bob: User, carol: User
) -> Conversation:
    """Group of Alice (admin), Bob and Carol."""
    return make_conversation(ConversationKind.GROUP, [alice, bob, carol], admin=alice, title="Team")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture()
async def hub(store: SqlStore, clock: FakeClock) -> AsyncIterator[SignalHub]:
    """Hub on the fake clock with production timings; tests advance time explicitly."""
    signal_hub = SignalHub(
        store,
        ring_timeout=30.0,
        reconnect_delay=5.0,
        reconnect_grace=20.0,
        presence_offline_delay=5.0,
        tick=0.005,
        clock=clock,
    )
    try:
        yield signal_hub
    finally:
        await signal_hub.close()


@pytest.fixture()
def make_transport() -> Callable[[], FakeTransport]:
    return FakeTransport


@pytest.fixture()
def open_connection(hub: SignalHub) -> Callable[[int], Awaitable[tuple[Connection, FakeTransport]]]:
    """Return a coroutine function connecting a fake client for a user id."""

    async def _open(user_id: int) -> tuple[Connection, FakeTransport]:
        transport = FakeTransport()
        connection = await hub.connect(user_id, transport)
        return connection, transport

    return _open


@pytest.fixture()
def eventually() -> Callable[..., Awaitable[None]]:
    """Return a coroutine function polling ``predicate`` until it holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture()
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def app_hub(app: FastAPI, store: SqlStore) -> Iterator[SignalHub]:
    """Install a hub on the real clock before the application starts."""
    signal_hub = SignalHub(store, **FAST_TIMINGS)
    app.state.hub = signal_hub
    try:
        yield signal_hub
    finally:
        app.state.hub = None


@pytest.fixture(autouse=True)
def override_session_dependency(
    app: FastAPI, session_factory: sessionmaker[Session]
) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        with session_factory() as session:
            yield session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI, app_hub: SignalHub) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture()
def alice_auth(alice: User) -> dict[str, str]:
    """Return authorization headers for Alice."""
    return auth_headers(alice)


@pytest.fixture()
def bob_auth(bob: User) -> dict[str, str]:
    return auth_headers(bob)


@pytest.fixture()
def carol_auth(carol: User) -> dict[str, str]:
    return auth_headers(carol)

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError

from bitbuilder.auth import AuthState, AuthUser
from bitbuilder.config import Settings
from bitbuilder.store import InMemoryJokeStore
from bitbuilder.tools import ToolExecutor

_LOST = object()


class FakeConnection:
    """In-memory websocket client: frames fed by the test, sends recorded."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.stall_sends = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def sent_types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    def feed(self, frame: Any) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, (str, bytes)) else json.dumps(frame))

    def drop(self) -> None:
        self._incoming.put_nowait(_LOST)

    async def send(self, message: str) -> None:
        if self.stall_sends:
            await asyncio.Event().wait()
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def __aiter__(self) -> FakeConnection:
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if item is _LOST:
            raise ConnectionClosedError(None, None)
        return item


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        project_id="bitbuilder-test",
        firebase_api_key="test-key",
        connect_timeout_seconds=0.2,
        response_timeout_seconds=0.1,
        turn_idle_timeout_seconds=0.2,
        keepalive_deadline_seconds=0.05,
        auth_wait_seconds=0.05,
        drafts_path=tmp_path / "drafts.json",
        drafts_debounce_seconds=0.05,
    )


@pytest.fixture
def user() -> AuthUser:
    return AuthUser(uid="u1", email="comic@example.com", id_token="id-token")


@pytest.fixture
def auth(user: AuthUser) -> AuthState:
    return AuthState(user)


@pytest.fixture
def store() -> InMemoryJokeStore:
    return InMemoryJokeStore()


@pytest.fixture
def executor(store: InMemoryJokeStore) -> ToolExecutor:
    return ToolExecutor(store)


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()

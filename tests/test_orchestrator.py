from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from bitbuilder.auth import AuthState, AuthUser
from bitbuilder.config import Settings
from bitbuilder.errors import ErrorCode
from bitbuilder.models import BridgeEvent, ConnectionState, EventKind, Speaker
from bitbuilder.orchestrator import (
    LOGIN_REQUIRED_TEXT,
    NO_CONNECTION_TEXT,
    NO_RESPONSE_TEXT,
    SAVED_TEXT,
    VOICE_CONNECTED_TEXT,
    BridgeOrchestrator,
    InputState,
)
from bitbuilder.store import InMemoryJokeStore
from bitbuilder.tools import ToolExecutor
from bitbuilder.transcript import LaneState
from bitbuilder.transports import (
    BaseTransport,
    CallableClient,
    DuplexTransport,
    RequestResponseTransport,
    WidgetTransport,
)

if TYPE_CHECKING:
    from conftest import FakeConnection

BASE_URL = "https://functions.test"
METADATA = {
    "type": "conversation_initiation_metadata",
    "conversation_initiation_metadata_event": {"conversation_id": "conv-1"},
}


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


class SilentTransport(BaseTransport):
    """Connects fine but never answers."""

    name = "silent"

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[str] = []

    async def start(self, on_event: Any) -> None:
        self._on_event = on_event
        await self.emit(BridgeEvent(EventKind.CONNECTION_OPENED))

    async def send_text(self, text: str) -> None:
        self.sent.append(text)


class _ChatBackend:
    def __init__(self) -> None:
        self.bodies: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)["data"]
        self.bodies.append(body)
        return httpx.Response(200, json={"result": {"conversationId": "c1", "finalResponse": "Knock knock!"}})


def _callable_transport(backend: _ChatBackend) -> RequestResponseTransport:
    client = CallableClient(
        BASE_URL,
        token_provider=lambda: "id-token",
        client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend)),
    )
    return RequestResponseTransport(client)


def _duplex(connection: FakeConnection) -> DuplexTransport:
    async def _connector(_url: str) -> FakeConnection:
        return connection

    return DuplexTransport(agent_id="agent-1", url="wss://agent.test/convai", keepalive_deadline=0.05, connector=_connector)


def _system_texts(orchestrator: BridgeOrchestrator) -> list[str]:
    return [turn.text for turn in orchestrator.transcript.turns if turn.speaker is Speaker.SYSTEM]


class _FakeWidget:
    def __init__(self) -> None:
        self.listeners: dict[str, list[Any]] = {}
        self.tools: dict[str, Any] = {}

    def add_event_listener(self, event_name: str, listener: Any) -> None:
        self.listeners.setdefault(event_name, []).append(listener)

    def register_client_tool(self, name: str, handler: Any) -> None:
        self.tools[name] = handler


@pytest.fixture
def orchestrator(settings: Settings, auth: AuthState, executor: ToolExecutor) -> BridgeOrchestrator:
    return BridgeOrchestrator(settings, auth, executor)


@pytest.mark.asyncio
async def test_knock_knock_conversation_reuses_conversation_id(orchestrator: BridgeOrchestrator) -> None:
    backend = _ChatBackend()
    await orchestrator.start()
    assert await orchestrator.attach(_callable_transport(backend))

    assert await orchestrator.send("Tell me a knock-knock joke")

    assert [(turn.speaker, turn.text) for turn in orchestrator.transcript.turns] == [
        (Speaker.USER, "Tell me a knock-knock joke"),
        (Speaker.ASSISTANT, "Knock knock!"),
    ]
    assert orchestrator.session is not None
    assert orchestrator.session.conversation_id == "c1"
    assert orchestrator.input_enabled

    await orchestrator.send("Who's there?")

    assert backend.bodies == [
        {"message": "Tell me a knock-knock joke", "conversationId": None},
        {"message": "Who's there?", "conversationId": "c1"},
    ]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_tool_call_frame_saves_joke_and_echoes_correlation_id(
    orchestrator: BridgeOrchestrator, store: InMemoryJokeStore, fake_connection: FakeConnection
) -> None:
    fake_connection.feed(METADATA)
    await orchestrator.start()
    assert await orchestrator.attach(_duplex(fake_connection))

    fake_connection.feed({
        "type": "client_tool_call",
        "toolName": "save_joke",
        "arguments": {"content": "Why did...", "tags": "pun, short"},
        "correlationId": "t1",
    })
    await _settle()

    [joke] = store.jokes
    assert joke.tags == ("pun", "short")
    result_frame = fake_connection.sent[-1]
    assert result_frame["type"] == "client_tool_result"
    assert result_frame["tool_call_id"] == "t1"
    assert result_frame["result"]["success"] is True
    assert result_frame["result"]["documentId"] == joke.document_id
    tool_turns = [turn.text for turn in orchestrator.transcript.turns if turn.speaker is Speaker.TOOL]
    assert tool_turns == [SAVED_TEXT]
    assert orchestrator.session is not None
    assert orchestrator.session.pending_tools == {}
    await orchestrator.close()


class _SlowStore(InMemoryJokeStore):
    async def create_joke(self, owner: str, content: str, tags: Any) -> str:
        await asyncio.sleep(0.3)
        return await super().create_joke(owner, content, tags)


@pytest.mark.asyncio
async def test_slow_tool_call_does_not_block_keepalive(
    settings: Settings, auth: AuthState, fake_connection: FakeConnection
) -> None:
    store = _SlowStore()
    orchestrator = BridgeOrchestrator(settings, auth, ToolExecutor(store))
    fake_connection.feed(METADATA)
    await orchestrator.start()
    assert await orchestrator.attach(_duplex(fake_connection))

    fake_connection.feed({
        "type": "client_tool_call",
        "client_tool_call": {"tool_name": "save_joke", "tool_call_id": "t1", "parameters": {"content": "Slow one"}},
    })
    fake_connection.feed({"type": "ping", "ping_event": {"event_id": 7}})
    await asyncio.sleep(0.1)

    assert "pong" in fake_connection.sent_types
    assert store.jokes == []

    await asyncio.sleep(0.3)
    await _settle()
    assert [joke.content for joke in store.jokes] == ["Slow one"]
    assert fake_connection.sent[-1]["tool_call_id"] == "t1"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_failed_tool_call_is_reported_and_returned(
    orchestrator: BridgeOrchestrator, store: InMemoryJokeStore, fake_connection: FakeConnection
) -> None:
    fake_connection.feed(METADATA)
    await orchestrator.start()
    await orchestrator.attach(_duplex(fake_connection))

    fake_connection.feed({"type": "client_tool_call", "toolName": "save_joke", "arguments": {}, "correlationId": "t2"})
    await _settle()

    assert store.jokes == []
    assert fake_connection.sent[-1]["result"] == {"error": "Joke content is required"}
    assert fake_connection.sent[-1]["is_error"] is True
    assert orchestrator.transcript.turns[-1].text == "❌ Joke content is required"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_response_timeout_reenables_input_with_one_notice(orchestrator: BridgeOrchestrator) -> None:
    transport = SilentTransport()
    states: list[InputState] = []
    orchestrator.input_changed.connect(lambda _sender, *, state: states.append(state), weak=False)
    await orchestrator.start()
    await orchestrator.attach(transport)

    assert await orchestrator.send("Anyone there?")
    assert orchestrator.input_state is InputState.WAITING
    assert await orchestrator.send("Hello?") is False

    await asyncio.sleep(0.3)

    assert orchestrator.input_enabled
    assert _system_texts(orchestrator).count(NO_RESPONSE_TEXT) == 1
    assert transport.sent == ["Anyone there?"]
    assert states == [InputState.WAITING, InputState.ENABLED]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_late_request_timeout_after_response_timer_adds_no_second_notice(
    orchestrator: BridgeOrchestrator,
) -> None:
    async def _hanging_backend(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.15)
        raise httpx.ReadTimeout("timed out", request=request)

    client = CallableClient(
        BASE_URL,
        token_provider=lambda: "id-token",
        client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(_hanging_backend)),
    )
    await orchestrator.start()
    await orchestrator.attach(RequestResponseTransport(client))

    assert await orchestrator.send("Anyone there?")

    assert _system_texts(orchestrator) == [NO_RESPONSE_TEXT]
    assert orchestrator.input_enabled
    await orchestrator.close()


@pytest.mark.asyncio
async def test_agent_reply_cancels_response_timer(
    orchestrator: BridgeOrchestrator, fake_connection: FakeConnection
) -> None:
    fake_connection.feed(METADATA)
    await orchestrator.start()
    await orchestrator.attach(_duplex(fake_connection))

    await orchestrator.send("Tell me a joke")
    fake_connection.feed({
        "type": "internal_tentative_agent_response",
        "tentative_agent_response_internal_event": {"tentative_agent_response": "Why"},
    })
    fake_connection.feed({"type": "agent_response", "agent_response_event": {"agent_response": "Why not?"}})
    await _settle()
    await asyncio.sleep(0.2)

    assert orchestrator.input_enabled
    assert NO_RESPONSE_TEXT not in _system_texts(orchestrator)
    assert fake_connection.sent[-1] == {"type": "user_message", "text": "Tell me a joke"}
    assistant = [turn for turn in orchestrator.transcript.turns if turn.speaker is Speaker.ASSISTANT]
    assert [turn.text for turn in assistant] == ["Why not?"]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_lost_connection_finalizes_streaming_turn(
    orchestrator: BridgeOrchestrator, fake_connection: FakeConnection
) -> None:
    fake_connection.feed(METADATA)
    await orchestrator.start()
    await orchestrator.attach(_duplex(fake_connection))
    await orchestrator.send("Tell me a joke")

    fake_connection.feed({
        "type": "internal_tentative_agent_response",
        "tentative_agent_response_internal_event": {"tentative_agent_response": "A horse walks"},
    })
    await _settle()
    fake_connection.drop()
    await _settle()

    transcript = orchestrator.transcript
    [turn] = [turn for turn in transcript.turns if turn.speaker is Speaker.ASSISTANT]
    assert turn.is_final
    assert turn.text == "A horse walks"
    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.IDLE
    assert orchestrator.input_enabled
    assert orchestrator.session is not None
    assert orchestrator.session.connection_state is ConnectionState.DISCONNECTED
    assert _system_texts(orchestrator)[-1].startswith("❌ Agent connection lost")
    await orchestrator.close()


@pytest.mark.asyncio
async def test_connection_timeout_falls_back_to_callable(
    orchestrator: BridgeOrchestrator, fake_connection: FakeConnection
) -> None:
    await orchestrator.start()

    attached = await orchestrator.attach(_duplex(fake_connection), fallback=_callable_transport(_ChatBackend()))

    assert attached is True
    assert orchestrator.session is not None
    assert orchestrator.session.text_transport == "callable"
    assert orchestrator.session.state_of("duplex") is ConnectionState.DISCONNECTED
    assert fake_connection.closed
    assert "❌ Timed out connecting to the agent (duplex)" in _system_texts(orchestrator)
    await orchestrator.close()


@pytest.mark.asyncio
async def test_second_attach_of_open_transport_is_rejected(orchestrator: BridgeOrchestrator) -> None:
    transport = SilentTransport()
    await orchestrator.start()

    assert await orchestrator.attach(transport) is True
    assert await orchestrator.attach(transport) is False
    await orchestrator.close()


@pytest.mark.asyncio
async def test_send_without_connection_shows_notice(orchestrator: BridgeOrchestrator) -> None:
    await orchestrator.start()

    assert await orchestrator.send("hello") is False
    assert _system_texts(orchestrator) == [NO_CONNECTION_TEXT]
    assert orchestrator.input_enabled


@pytest.mark.asyncio
async def test_start_without_identity_asks_to_log_in(settings: Settings, executor: ToolExecutor) -> None:
    orchestrator = BridgeOrchestrator(settings, AuthState(), executor)

    assert await orchestrator.start() is None
    assert await orchestrator.send("hello") is False
    assert _system_texts(orchestrator) == [LOGIN_REQUIRED_TEXT, LOGIN_REQUIRED_TEXT]


@pytest.mark.asyncio
async def test_identity_arriving_late_is_awaited(settings: Settings, executor: ToolExecutor, user: AuthUser) -> None:
    auth = AuthState()
    orchestrator = BridgeOrchestrator(settings, auth, executor)

    starting = asyncio.create_task(orchestrator.start())
    await asyncio.sleep(0)
    auth.set_user(user)
    session = await starting

    assert session is not None
    assert session.user.uid == "u1"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_sign_out_tears_down_transports(orchestrator: BridgeOrchestrator, auth: AuthState) -> None:
    transport = SilentTransport()
    await orchestrator.start()
    await orchestrator.attach(transport)

    auth.set_user(None)
    await _settle()

    assert orchestrator.session is None
    assert transport._on_event is None


@pytest.mark.asyncio
async def test_save_turn_persists_final_assistant_turn(
    orchestrator: BridgeOrchestrator, store: InMemoryJokeStore
) -> None:
    await orchestrator.start()
    await orchestrator.attach(_callable_transport(_ChatBackend()))
    await orchestrator.send("Tell me a knock-knock joke")
    user_turn, agent_turn = orchestrator.transcript.turns

    result = await orchestrator.save_turn(agent_turn.turn_id, "knock-knock")
    rejected = await orchestrator.save_turn(user_turn.turn_id)

    assert result.success is True
    assert agent_turn.saved_document_id == result.document_id
    assert [(joke.content, joke.tags) for joke in store.jokes] == [("Knock knock!", ("knock-knock",))]
    assert rejected.code is ErrorCode.INVALID_ARGUMENT
    await orchestrator.close()


@pytest.mark.asyncio
async def test_widget_runs_alongside_text_transport(
    orchestrator: BridgeOrchestrator, store: InMemoryJokeStore
) -> None:
    widget = _FakeWidget()
    await orchestrator.start()
    await orchestrator.attach(_callable_transport(_ChatBackend()))
    assert await orchestrator.attach(WidgetTransport(widget)) is True

    widget.listeners["open"][0](None)
    await _settle()
    payload = await widget.tools["save_joke"]({"content": "Voice joke", "tags": ["voice"]})

    assert payload["success"] is True
    assert store.jokes[0].content == "Voice joke"
    assert VOICE_CONNECTED_TEXT in _system_texts(orchestrator)
    assert orchestrator.session is not None
    assert orchestrator.session.text_transport == "callable"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_second_widget_attach_before_open_is_rejected(
    orchestrator: BridgeOrchestrator, store: InMemoryJokeStore
) -> None:
    widget = _FakeWidget()
    transport = WidgetTransport(widget)
    await orchestrator.start()

    assert await orchestrator.attach(transport) is True
    assert orchestrator.session is not None
    assert orchestrator.session.state_of("widget") is ConnectionState.CONNECTING
    assert await orchestrator.attach(transport) is False

    [on_call] = widget.listeners["call"]
    on_call({"tool_name": "save_joke", "parameters": {"content": "Only once", "tags": ["voice"]}})
    await _settle()

    assert [joke.content for joke in store.jokes] == ["Only once"]
    await orchestrator.close()

"""Bridge orchestrator.

Owns the ``BridgeSession``, opens and closes transports, routes every
transport's events into the shared transcript and the tool executor, and runs
the timers that keep the input surface from getting stuck.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any

from blinker import Signal
from loguru import logger

from bitbuilder.auth import AuthState, AuthUser
from bitbuilder.config import Settings
from bitbuilder.errors import BridgeError, ErrorCode
from bitbuilder.logging_utils import bind_session
from bitbuilder.models import (
    BridgeEvent,
    ConnectionState,
    ConversationTurn,
    EventKind,
    Speaker,
    ToolInvocation,
    ToolResult,
)
from bitbuilder.session import BridgeSession
from bitbuilder.tools import SAVE_JOKE, ToolExecutor
from bitbuilder.transcript import Transcript
from bitbuilder.transports.base import BaseTransport
from bitbuilder.transports.widget import WidgetTransport

LOGIN_REQUIRED_TEXT = "⚠️ Please log in to chat."
NO_RESPONSE_TEXT = "⏳ No response from the agent. Please try again."
NO_CONNECTION_TEXT = "❌ No chat connection is open."
SAVED_TEXT = "✅ Joke saved to Bitbinder!"
VOICE_CONNECTED_TEXT = "🎤 Voice session connected"
VOICE_ENDED_TEXT = "🔇 Voice session ended"

_AGENT_TEXT_KINDS = (EventKind.PARTIAL_AGENT_TEXT, EventKind.FINAL_AGENT_TEXT, EventKind.AGENT_CORRECTION)


class InputState(StrEnum):
    ENABLED = "enabled"
    WAITING = "waiting"


class BridgeOrchestrator:
    """Coordinate transports, transcript, tools and timers for one signed-in user."""

    def __init__(
        self,
        settings: Settings,
        auth: AuthState,
        executor: ToolExecutor,
        *,
        transcript: Transcript | None = None,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.executor = executor
        self.transcript = transcript or Transcript(idle_timeout=settings.turn_idle_timeout_seconds)
        self.session: BridgeSession | None = None
        self.input_changed = Signal("bitbuilder.input.changed")
        self._input = InputState.ENABLED
        self._response_timer: asyncio.TimerHandle | None = None
        self._response_expired = False
        self._opened: dict[str, asyncio.Future[None]] = {}
        self._unsubscribe_auth: Any = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.transcript.turn_finalized.connect(self._on_turn_finalized, weak=False)

    @property
    def input_state(self) -> InputState:
        return self._input

    @property
    def input_enabled(self) -> bool:
        return self._input is InputState.ENABLED

    async def start(self) -> BridgeSession | None:
        """Open a session once an identity is available."""
        user = await self.auth.wait_for_user(self.settings.auth_wait_seconds)
        if user is None:
            logger.warning("bridge.start.unauthenticated")
            self.transcript.append(Speaker.SYSTEM, LOGIN_REQUIRED_TEXT)
            return None
        self.session = BridgeSession(user=user)
        self._unsubscribe_auth = self.auth.subscribe(self._on_auth_change)
        bind_session(user.uid)
        logger.info("bridge.session.started uid={}", user.uid)
        return self.session

    async def attach(self, transport: BaseTransport, *, fallback: BaseTransport | None = None) -> bool:
        """Open ``transport``; on failure report it and try ``fallback`` if given."""
        session = self._require_session()
        if session.state_of(transport.name) is not ConnectionState.DISCONNECTED:
            logger.warning("bridge.attach.duplicate transport={}", transport.name)
            return False

        session.transports[transport.name] = transport
        session.states[transport.name] = ConnectionState.CONNECTING
        if not transport.connects_on_start:
            await transport.start(self.handle_event)
            logger.info("bridge.transport.attached transport={}", transport.name)
            return True

        opened: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._opened[transport.name] = opened
        try:
            await asyncio.wait_for(self._open(transport, opened), timeout=self.settings.connect_timeout_seconds)
        except TimeoutError:
            error = BridgeError(ErrorCode.CONNECTION_TIMEOUT, f"Timed out connecting to the agent ({transport.name})")
        except BridgeError as exc:
            error = exc
        else:
            if transport.accepts_text:
                session.text_transport = transport.name
            logger.info("bridge.transport.attached transport={}", transport.name)
            return True
        finally:
            self._opened.pop(transport.name, None)

        self._report(error)
        await self._shutdown(transport)
        if fallback is not None:
            logger.info("bridge.transport.fallback from={} to={}", transport.name, fallback.name)
            return await self.attach(fallback)
        return False

    async def _open(self, transport: BaseTransport, opened: asyncio.Future[None]) -> None:
        await transport.start(self.handle_event)
        await opened

    async def send(self, text: str) -> bool:
        """Send typed input. Returns ``False`` when the send was rejected."""
        if not self.input_enabled:
            logger.info("bridge.send.rejected reason=waiting")
            return False
        text = text.strip()
        if not text:
            return False
        session = self.session
        if session is None or self.auth.current_user is None:
            self.transcript.append(Speaker.SYSTEM, LOGIN_REQUIRED_TEXT)
            return False
        transport = session.transports.get(session.text_transport or "")
        if transport is None or session.connection_state is not ConnectionState.CONNECTED:
            self.transcript.append(Speaker.SYSTEM, NO_CONNECTION_TEXT)
            return False

        self.transcript.append(Speaker.USER, text, source=transport.name)
        self._set_input(InputState.WAITING)
        self._start_response_timer()
        try:
            await transport.send_text(text)
        except BridgeError as exc:
            self._settle(exc)
        except Exception as exc:
            logger.exception("bridge.send.error transport={}", transport.name)
            self._settle(BridgeError(ErrorCode.INTERNAL, str(exc) or "Failed to send message. Please try again."))
        return True

    async def handle_event(self, event: BridgeEvent) -> None:
        """Single entry point for every transport's events."""
        session = self.session
        if session is None:
            logger.debug("bridge.event.dropped kind={} source={}", event.kind, event.source)
            return

        match event.kind:
            case EventKind.CONNECTION_OPENED:
                self._on_opened(session, event)
            case EventKind.CONNECTION_CLOSED:
                self._on_closed(session, event)
            case EventKind.KEEPALIVE:
                logger.debug("bridge.keepalive source={}", event.source)
            case EventKind.TOOL_CALL:
                await self._run_tool(session, event)
            case _:
                if event.kind in _AGENT_TEXT_KINDS:
                    self._cancel_response_timer()
                    if event.session_id and event.source == session.text_transport:
                        session.conversation_id = event.session_id
                self.transcript.apply(event)

    async def save_turn(self, turn_id: int, tags: Any = None) -> ToolResult:
        """Save a finalized assistant turn as a joke."""
        session = self._require_session()
        turn = self.transcript.get(turn_id)
        if turn is None or turn.speaker is not Speaker.ASSISTANT or not turn.is_final:
            return ToolResult.failed(ErrorCode.INVALID_ARGUMENT, f"No saved-able assistant message #{turn_id}")
        invocation = ToolInvocation(tool_name=SAVE_JOKE, arguments={"content": turn.text, "tags": tags})
        result = await self.executor.execute(invocation, session.user)
        if result.success:
            turn.saved_document_id = result.document_id
        self._report_tool(result)
        return result

    async def close(self) -> None:
        """Tear down every transport and clear all session state."""
        session = self.session
        if session is None:
            return
        self.session = None
        self._cancel_response_timer()
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        for transport in list(session.transports.values()):
            await self._shutdown(transport)
        self.transcript.finalize_lanes()
        session.clear()
        self._set_input(InputState.ENABLED)
        logger.info("bridge.session.closed uid={}", session.user.uid)
        bind_session(None)

    def _on_opened(self, session: BridgeSession, event: BridgeEvent) -> None:
        session.states[event.source] = ConnectionState.CONNECTED
        opened = self._opened.get(event.source)
        if opened is not None and not opened.done():
            opened.set_result(None)
        if event.source == WidgetTransport.name:
            self.transcript.append(Speaker.SYSTEM, VOICE_CONNECTED_TEXT, source=event.source)

    def _on_closed(self, session: BridgeSession, event: BridgeEvent) -> None:
        session.states[event.source] = ConnectionState.DISCONNECTED
        self.transcript.apply(event)
        opened = self._opened.get(event.source)
        if opened is not None and not opened.done():
            opened.set_exception(event.error or BridgeError(ErrorCode.CONNECTION_FAILED, "Connection closed"))
            return
        if event.error is not None:
            self._report(event.error)
        elif event.source == WidgetTransport.name:
            self.transcript.append(Speaker.SYSTEM, VOICE_ENDED_TEXT, source=event.source)
        if event.source == session.text_transport and not self.input_enabled:
            self._cancel_response_timer()
            self._set_input(InputState.ENABLED)

    async def _run_tool(self, session: BridgeSession, event: BridgeEvent) -> None:
        invocation = event.invocation
        if invocation is None:
            return
        if not session.track_tool(invocation):
            logger.warning("bridge.tool_call.duplicate correlation_id={}", invocation.correlation_id)
            return
        try:
            result = await self.executor.execute(invocation, session.user)
        finally:
            session.resolve_tool(invocation)
        self._report_tool(result)

        transport = session.transports.get(event.source)
        if transport is None:
            return
        try:
            await transport.send_tool_result(invocation, result)
        except BridgeError as exc:
            self._report(exc)

    def _report_tool(self, result: ToolResult) -> None:
        text = SAVED_TEXT if result.success else f"❌ {result.error or 'Failed to save joke'}"
        self.transcript.append(Speaker.TOOL, text)

    def _report(self, error: BridgeError) -> None:
        logger.warning("bridge.error code={} message={}", error.code, error.message)
        self.transcript.append(Speaker.SYSTEM, f"❌ {error.message}")

    def _settle(self, error: BridgeError) -> None:
        self._cancel_response_timer()
        if self._response_expired:
            # The no-response notice already stands for this send.
            logger.warning("bridge.send.late_error code={} message={}", error.code, error.message)
            return
        self._report(error)
        self._set_input(InputState.ENABLED)

    def _on_turn_finalized(self, _sender: Any, *, turn: ConversationTurn) -> None:
        if turn.speaker is Speaker.ASSISTANT and not self.input_enabled:
            self._cancel_response_timer()
            self._set_input(InputState.ENABLED)

    def _on_auth_change(self, user: AuthUser | None) -> None:
        session = self.session
        if session is None:
            return
        if user is None or user.uid != session.user.uid:
            logger.info("bridge.auth.changed closing session")
            task = asyncio.get_running_loop().create_task(self.close())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _start_response_timer(self) -> None:
        self._cancel_response_timer()
        self._response_expired = False
        loop = asyncio.get_running_loop()
        self._response_timer = loop.call_later(self.settings.response_timeout_seconds, self._on_response_timeout)

    def _cancel_response_timer(self) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None

    def _on_response_timeout(self) -> None:
        self._response_timer = None
        if self.input_enabled:
            return
        self._response_expired = True
        logger.warning("bridge.response.timeout code={}", ErrorCode.RESPONSE_TIMEOUT)
        self.transcript.append(Speaker.SYSTEM, NO_RESPONSE_TEXT)
        self._set_input(InputState.ENABLED)

    def _set_input(self, state: InputState) -> None:
        if state is self._input:
            return
        self._input = state
        self.input_changed.send(self, state=state)

    def _require_session(self) -> BridgeSession:
        if self.session is None:
            raise BridgeError(ErrorCode.AUTHENTICATION_REQUIRED, "No active session; sign in first")
        return self.session

    async def _shutdown(self, transport: BaseTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.exception("bridge.transport.close_error transport={}", transport.name)
        session = self.session
        if session is not None:
            session.states[transport.name] = ConnectionState.DISCONNECTED

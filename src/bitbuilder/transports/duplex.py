"""Duplex streaming transport over a websocket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from bitbuilder.errors import BridgeError, ErrorCode
from bitbuilder.models import BridgeEvent, EventKind, ToolInvocation, ToolResult
from bitbuilder.transports.base import BaseTransport, EventHandler
from bitbuilder.transports.frames import (
    decode_frame,
    initiation_frame,
    pong_frame,
    tool_result_frame,
    user_message_frame,
)
from bitbuilder.transports.request_response import CallableClient


class Connection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[Connection]]


async def _connect(url: str) -> Connection:
    return await websockets.connect(url, max_size=None)


@dataclass(frozen=True)
class SessionConfig:
    """First outbound frame settings."""

    prompt: str | None = None
    language: str | None = None


class SignedUrlProvider:
    """Caches the signed connection URL and refreshes it before it goes stale."""

    def __init__(self, client: CallableClient, *, refresh_seconds: float = 600.0) -> None:
        self._client = client
        self.refresh_seconds = refresh_seconds
        self._url: str | None = None
        self._fetched_at = 0.0

    async def get(self) -> str:
        if self._url is None or time.monotonic() - self._fetched_at >= self.refresh_seconds:
            return await self.refresh()
        return self._url

    async def refresh(self) -> str:
        self._url = await self._client.get_signed_url()
        self._fetched_at = time.monotonic()
        logger.info("duplex.signed_url.refreshed")
        return self._url


class DuplexTransport(BaseTransport):
    """Long-lived bidirectional connection carrying typed and spoken turns.

    The connection only becomes usable once the conversation metadata frame
    arrives. Frames that overtake it are buffered and replayed, except pings,
    which are answered right away.
    """

    name = "duplex"

    def __init__(
        self,
        *,
        signed_urls: SignedUrlProvider | None = None,
        agent_id: str | None = None,
        url: str = "",
        session_config: SessionConfig | None = None,
        keepalive_deadline: float = 5.0,
        connector: Connector = _connect,
    ) -> None:
        super().__init__()
        if signed_urls is None and not agent_id:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, "duplex transport needs a signed URL provider or an agent id")
        self._signed_urls = signed_urls
        self._agent_id = agent_id
        self._url = url
        self._session_config = session_config or SessionConfig()
        self._keepalive_deadline = keepalive_deadline
        self._connector = connector
        self._ws: Connection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._refresher: asyncio.Task[None] | None = None
        self._usable = False
        self._closing = False
        self._closed_emitted = False
        self._close_error: BridgeError | None = None
        self._buffer: list[BridgeEvent] = []
        self._seen_tool_calls: set[str] = set()
        self._tool_tasks: set[asyncio.Task[None]] = set()
        self.session_id: str | None = None

    async def _resolve_url(self) -> str:
        if self._signed_urls is not None:
            return await self._signed_urls.get()
        return f"{self._url}?{urlencode({'agent_id': self._agent_id})}"

    async def start(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        url = await self._resolve_url()
        logger.info("duplex.connect signed={}", self._signed_urls is not None)
        try:
            self._ws = await self._connector(url)
            await self._send(initiation_frame(prompt=self._session_config.prompt, language=self._session_config.language))
        except (OSError, WebSocketException) as exc:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, f"Could not connect to the agent: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop())
        if self._signed_urls is not None:
            self._refresher = asyncio.create_task(self._refresh_loop(self._signed_urls))

    async def send_text(self, text: str) -> None:
        if self._ws is None or not self._usable:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, "The agent connection is not open")
        await self._send(user_message_frame(text))

    async def send_tool_result(self, invocation: ToolInvocation, result: ToolResult) -> None:
        if invocation.correlation_id is None:
            return
        await self._send(tool_result_frame(invocation.correlation_id, result))
        logger.info("duplex.tool_result.sent correlation_id={} success={}", invocation.correlation_id, result.success)

    async def close(self) -> None:
        self._closing = True
        if self._refresher is not None:
            self._refresher.cancel()
        for task in list(self._tool_tasks):
            task.cancel()
        if self._ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        await self._emit_closed()
        await super().close()

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, "The agent connection is not open")
        try:
            await self._ws.send(json.dumps(frame, ensure_ascii=False))
        except ConnectionClosed as exc:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, "The agent connection closed") from exc

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("duplex.frame.undecodable")
                    continue
                await self._handle_frame(data)
        except ConnectionClosed as exc:
            if not self._closing and self._close_error is None:
                self._close_error = BridgeError(ErrorCode.CONNECTION_FAILED, f"Agent connection lost ({exc.rcvd})")
        finally:
            self._ws = None
            self._usable = False
            await self._emit_closed()

    async def _handle_frame(self, data: Any) -> None:
        for event in decode_frame(data):
            if event.kind is EventKind.KEEPALIVE:
                await self._answer_ping(event)
                await self.emit(event)
            elif event.kind is EventKind.CONNECTION_OPENED:
                await self._mark_usable(event)
            elif not self._usable:
                self._buffer.append(event)
            else:
                await self._dispatch(event)

    async def _mark_usable(self, event: BridgeEvent) -> None:
        if self._usable:
            return
        self._usable = True
        self.session_id = event.session_id
        logger.info("duplex.session.ready session_id={} buffered={}", self.session_id, len(self._buffer))
        await self.emit(event)
        buffered, self._buffer = self._buffer, []
        for pending in buffered:
            await self._dispatch(pending)

    async def _dispatch(self, event: BridgeEvent) -> None:
        if event.kind is EventKind.TOOL_CALL and event.invocation is not None:
            correlation_id = event.invocation.correlation_id
            if correlation_id is not None:
                if correlation_id in self._seen_tool_calls:
                    logger.warning("duplex.tool_call.duplicate correlation_id={}", correlation_id)
                    return
                self._seen_tool_calls.add(correlation_id)
            # Tool runs wait on the store; the reader keeps answering pings meanwhile.
            task = asyncio.create_task(self.emit(event))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)
            return
        await self.emit(event)

    async def _answer_ping(self, event: BridgeEvent) -> None:
        event_id = event.metadata.get("event_id")
        try:
            await asyncio.wait_for(self._send(pong_frame(event_id)), timeout=self._keepalive_deadline)
        except (TimeoutError, BridgeError):
            logger.warning("duplex.keepalive.missed event_id={}", event_id)
            self._close_error = BridgeError(ErrorCode.CONNECTION_TIMEOUT, "Agent connection timed out")
            if self._ws is not None:
                with contextlib.suppress(WebSocketException, OSError):
                    await self._ws.close()

    async def _emit_closed(self) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        logger.info("duplex.closed error={}", self._close_error)
        await self.emit(BridgeEvent(EventKind.CONNECTION_CLOSED, session_id=self.session_id, error=self._close_error))

    async def _refresh_loop(self, signed_urls: SignedUrlProvider) -> None:
        while True:
            await asyncio.sleep(signed_urls.refresh_seconds)
            try:
                await signed_urls.refresh()
            except BridgeError as exc:
                logger.warning("duplex.signed_url.refresh_failed error={}", exc)

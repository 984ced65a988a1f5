"""Embedded voice widget transport."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from loguru import logger

from bitbuilder.errors import BridgeError, ErrorCode
from bitbuilder.models import BridgeEvent, EventKind, ToolInvocation, ToolResult
from bitbuilder.tools import SAVE_JOKE
from bitbuilder.transports.base import BaseTransport, EventHandler
from bitbuilder.transports.frames import decode_frame

READY_EVENT = "ready"
CALL_EVENT = "call"
MESSAGE_EVENT = "message"
OPEN_EVENT = "open"
CLOSE_EVENT = "close"

ToolHandler = Callable[[Mapping[str, Any]], Any]


class Widget(Protocol):
    """Third-party conversation widget.

    A widget may additionally expose ``register_client_tool(name, handler)``
    once it is ready, and ``send_user_message(text)`` for typed input.
    """

    def add_event_listener(self, event_name: str, listener: Callable[[Any], Any]) -> None: ...


def _detail_field(detail: Any, *keys: str) -> Any:
    for key in keys:
        if isinstance(detail, Mapping) and key in detail:
            return detail[key]
        if hasattr(detail, key):
            return getattr(detail, key)
    return None


class WidgetTransport(BaseTransport):
    """Wire the widget's tool hooks and event stream into the bridge.

    Registration happens once, through whichever of the readiness event or the
    bounded poll gets there first; ``ready()`` resolves when it has happened
    (``True``) or polling gave up (``False``).
    """

    name = "widget"
    connects_on_start = False
    accepts_text = False

    def __init__(
        self,
        widget: Widget,
        *,
        tool_names: Iterable[str] = (SAVE_JOKE,),
        poll_interval: float = 0.3,
        poll_attempts: int = 50,
    ) -> None:
        super().__init__()
        self._widget = widget
        self._tool_names = tuple(tool_names)
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._registered: asyncio.Future[bool] | None = None
        self._poller: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._pending: dict[int, tuple[ToolInvocation, asyncio.Future[ToolResult]]] = {}
        self._seen_call_ids: set[str] = set()
        self.registration_count = 0

    async def start(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        self._registered = asyncio.get_running_loop().create_future()
        self._widget.add_event_listener(CALL_EVENT, self._on_call_event)
        self._widget.add_event_listener(MESSAGE_EVENT, self._on_message)
        self._widget.add_event_listener(OPEN_EVENT, self._on_open)
        self._widget.add_event_listener(CLOSE_EVENT, self._on_close)
        if self._try_register():
            return
        self._widget.add_event_listener(READY_EVENT, self._on_ready)
        self._poller = asyncio.create_task(self._poll_register())

    async def ready(self) -> bool:
        if self._registered is None:
            return False
        return await self._registered

    async def send_text(self, text: str) -> None:
        send = getattr(self._widget, "send_user_message", None)
        if not callable(send):
            raise BridgeError(ErrorCode.INVALID_ARGUMENT, "The voice widget does not accept typed messages")
        outcome = send(text)
        if inspect.isawaitable(outcome):
            await outcome

    async def send_tool_result(self, invocation: ToolInvocation, result: ToolResult) -> None:
        entry = self._pending.pop(id(invocation), None)
        if entry is not None and not entry[1].done():
            entry[1].set_result(result)

    async def close(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
        for task in list(self._tasks):
            task.cancel()
        for _, future in self._pending.values():
            if not future.done():
                future.set_result(ToolResult.failed(ErrorCode.INTERNAL, "Session closed"))
        self._pending.clear()
        if self._registered is not None and not self._registered.done():
            self._registered.set_result(False)
        await super().close()

    def _try_register(self) -> bool:
        if self.registration_count:
            return True
        register = getattr(self._widget, "register_client_tool", None)
        if not callable(register):
            return False
        for tool_name in self._tool_names:
            register(tool_name, self._tool_handler(tool_name))
        self.registration_count += 1
        if self._registered is not None and not self._registered.done():
            self._registered.set_result(True)
        logger.info("widget.tools.registered tools={}", ",".join(self._tool_names))
        return True

    def _on_ready(self, _detail: Any) -> None:
        self._try_register()

    async def _poll_register(self) -> None:
        for _ in range(self._poll_attempts):
            await asyncio.sleep(self._poll_interval)
            if self._try_register():
                return
        logger.warning("widget.tools.register_gave_up attempts={}", self._poll_attempts)
        if self._registered is not None and not self._registered.done():
            self._registered.set_result(False)

    def _tool_handler(self, tool_name: str) -> ToolHandler:
        async def _handler(parameters: Mapping[str, Any]) -> dict[str, Any]:
            invocation = ToolInvocation(tool_name=tool_name, arguments=dict(parameters or {}))
            result = await self._dispatch(invocation)
            return result.to_payload()

        return _handler

    async def _dispatch(self, invocation: ToolInvocation) -> ToolResult:
        future: asyncio.Future[ToolResult] = asyncio.get_running_loop().create_future()
        self._pending[id(invocation)] = (invocation, future)
        await self.emit(BridgeEvent(EventKind.TOOL_CALL, invocation=invocation))
        if not future.done():
            self._pending.pop(id(invocation), None)
            future.set_result(ToolResult.failed(ErrorCode.INTERNAL, "Tool call was not handled"))
        return future.result()

    def _on_call_event(self, detail: Any) -> None:
        self._spawn(self._handle_call_event(detail))

    async def _handle_call_event(self, detail: Any) -> None:
        tool_name = _detail_field(detail, "tool_name", "toolName")
        parameters = _detail_field(detail, "parameters", "arguments") or {}
        callback = _detail_field(detail, "callback")
        call_id = _detail_field(detail, "tool_call_id", "id")
        if call_id is not None:
            if str(call_id) in self._seen_call_ids:
                logger.warning("widget.tool_call.duplicate id={}", call_id)
                return
            self._seen_call_ids.add(str(call_id))
        if not isinstance(tool_name, str) or not tool_name:
            result = ToolResult.failed(ErrorCode.INVALID_ARGUMENT, "Tool call without a tool name")
        else:
            arguments = dict(parameters) if isinstance(parameters, Mapping) else {}
            result = await self._dispatch(ToolInvocation(tool_name=tool_name, arguments=arguments))
        if callable(callback):
            outcome = callback(result.to_payload())
            if inspect.isawaitable(outcome):
                await outcome

    def _on_message(self, frame: Any) -> None:
        events = [event for event in decode_frame(frame) if event.kind not in (EventKind.KEEPALIVE, EventKind.TOOL_CALL)]
        for event in events:
            self._spawn(self.emit(event))

    def _on_open(self, _detail: Any) -> None:
        self._spawn(self.emit(BridgeEvent(EventKind.CONNECTION_OPENED)))

    def _on_close(self, _detail: Any) -> None:
        self._spawn(self.emit(BridgeEvent(EventKind.CONNECTION_CLOSED)))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

"""Base transport interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import replace

from loguru import logger

from bitbuilder.models import BridgeEvent, ToolInvocation, ToolResult

EventHandler = Callable[[BridgeEvent], Awaitable[None]]


class BaseTransport(ABC):
    """Abstract base class for transport adapters.

    Adapters translate one channel's framing into ``BridgeEvent`` values and
    hand them to the orchestrator's handler. They never open or close
    themselves; the orchestrator calls ``start`` and ``close``.
    """

    name: str = "base"
    # Whether ``start`` is followed by a connection-opened event the caller should wait for.
    connects_on_start: bool = True
    accepts_text: bool = True

    def __init__(self) -> None:
        self._on_event: EventHandler | None = None

    @abstractmethod
    async def start(self, on_event: EventHandler) -> None:
        """Open the channel and start delivering events to ``on_event``."""

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Send one typed user message."""

    async def send_tool_result(self, invocation: ToolInvocation, result: ToolResult) -> None:
        """Report a tool result back to the agent that requested it."""
        return None

    async def close(self) -> None:
        self._on_event = None

    async def emit(self, event: BridgeEvent) -> None:
        if self._on_event is None:
            logger.debug("{}.event.dropped kind={}", self.name, event.kind)
            return
        try:
            await self._on_event(replace(event, source=self.name))
        except Exception:
            logger.exception("{}.event.error kind={}", self.name, event.kind)

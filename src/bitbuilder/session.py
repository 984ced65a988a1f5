"""Per-user bridge session state."""

from __future__ import annotations

from dataclasses import dataclass, field

from bitbuilder.auth import AuthUser
from bitbuilder.models import ConnectionState, ToolInvocation
from bitbuilder.transports.base import BaseTransport


@dataclass
class BridgeSession:
    """State scoped to one signed-in user and one open view.

    Only the orchestrator mutates it; transports may read connection state.
    """

    user: AuthUser
    conversation_id: str | None = None
    transports: dict[str, BaseTransport] = field(default_factory=dict)
    states: dict[str, ConnectionState] = field(default_factory=dict)
    pending_tools: dict[str, ToolInvocation] = field(default_factory=dict)
    text_transport: str | None = None

    @property
    def connection_state(self) -> ConnectionState:
        """Connection state of the transport that carries typed input."""
        if self.text_transport is None:
            return ConnectionState.DISCONNECTED
        return self.state_of(self.text_transport)

    def state_of(self, name: str) -> ConnectionState:
        return self.states.get(name, ConnectionState.DISCONNECTED)

    def track_tool(self, invocation: ToolInvocation) -> bool:
        """Record an outstanding tool call; ``False`` when its id is already pending."""
        correlation_id = invocation.correlation_id
        if correlation_id is None:
            return True
        if correlation_id in self.pending_tools:
            return False
        self.pending_tools[correlation_id] = invocation
        return True

    def resolve_tool(self, invocation: ToolInvocation) -> None:
        if invocation.correlation_id is not None:
            self.pending_tools.pop(invocation.correlation_id, None)

    def clear(self) -> None:
        self.transports.clear()
        self.states.clear()
        self.pending_tools.clear()
        self.text_transport = None

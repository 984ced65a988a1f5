"""Bridge data model."""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from bitbuilder.errors import BridgeError, ErrorCode, TurnFinalizedError

_turn_ids = itertools.count(1)


class Speaker(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Finality(StrEnum):
    INTERIM = "interim"
    FINAL = "final"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EventKind(StrEnum):
    """Canonical event shape every transport adapter normalizes to."""

    PARTIAL_USER_TEXT = "partial-user-text"
    FINAL_USER_TEXT = "final-user-text"
    PARTIAL_AGENT_TEXT = "partial-agent-text"
    FINAL_AGENT_TEXT = "final-agent-text"
    AGENT_CORRECTION = "agent-correction"
    TURN_BOUNDARY = "turn-boundary"
    TOOL_CALL = "tool-call"
    CONNECTION_OPENED = "connection-opened"
    CONNECTION_CLOSED = "connection-closed"
    KEEPALIVE = "keepalive"


_TEXT_KINDS: dict[EventKind, tuple[Speaker, Finality]] = {
    EventKind.PARTIAL_USER_TEXT: (Speaker.USER, Finality.INTERIM),
    EventKind.FINAL_USER_TEXT: (Speaker.USER, Finality.FINAL),
    EventKind.PARTIAL_AGENT_TEXT: (Speaker.ASSISTANT, Finality.INTERIM),
    EventKind.FINAL_AGENT_TEXT: (Speaker.ASSISTANT, Finality.FINAL),
}


@dataclass
class ConversationTurn:
    """One utterance in the transcript. Text is frozen once the turn is final."""

    speaker: Speaker
    text: str
    finality: Finality = Finality.INTERIM
    source: str = ""
    turn_id: int = field(default_factory=lambda: next(_turn_ids))
    saved_document_id: str | None = None

    @property
    def is_final(self) -> bool:
        return self.finality is Finality.FINAL

    def revise(self, text: str) -> None:
        if self.is_final:
            raise TurnFinalizedError(f"turn {self.turn_id} is final")
        self.text = text

    def finalize(self, text: str | None = None) -> None:
        if self.is_final:
            raise TurnFinalizedError(f"turn {self.turn_id} is final")
        if text:
            self.text = text
        self.finality = Finality.FINAL


@dataclass(frozen=True)
class ToolInvocation:
    """A request from the agent to run a client-side capability."""

    tool_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None


@dataclass(frozen=True)
class ToolResult:
    """Structured outcome of one tool execution."""

    success: bool
    document_id: str | None = None
    message: str = ""
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def ok(cls, document_id: str, message: str) -> ToolResult:
        return cls(success=True, document_id=document_id, message=message)

    @classmethod
    def failed(cls, code: ErrorCode, error: str) -> ToolResult:
        return cls(success=False, error=error, code=code)

    def to_payload(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "documentId": self.document_id, "message": self.message}
        return {"error": self.error or "Tool execution failed"}


@dataclass(frozen=True)
class SavedJoke:
    """Persisted joke record as exposed by a store."""

    document_id: str
    owner: str
    content: str
    tags: tuple[str, ...]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class BridgeEvent:
    """Transport-neutral event."""

    kind: EventKind
    text: str = ""
    speaker: Speaker | None = None
    invocation: ToolInvocation | None = None
    session_id: str | None = None
    error: BridgeError | None = None
    source: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def lane(self) -> tuple[Speaker, Finality] | None:
        """Speaker lane and finality for transcript text events."""
        return _TEXT_KINDS.get(self.kind)

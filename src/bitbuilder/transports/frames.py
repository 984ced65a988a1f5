"""Conversation frame codec.

Inbound frames name the same logical field under different nested keys
depending on the frame variant and the sender version. Everything is
normalized here so downstream code only ever sees ``BridgeEvent`` values.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

from loguru import logger

from bitbuilder.models import BridgeEvent, EventKind, Speaker, ToolInvocation, ToolResult

FrameDecoder = Callable[[Mapping[str, Any]], list[BridgeEvent]]


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else data


def _first_text(section: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = section.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _decode_metadata(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "conversation_initiation_metadata_event")
    session_id = section.get("conversation_id") or data.get("conversation_id")
    return [BridgeEvent(EventKind.CONNECTION_OPENED, session_id=str(session_id) if session_id else None)]


def _decode_user_transcript(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "user_transcription_event")
    text = _first_text(section, "user_transcript", "text")
    if not text:
        return []
    is_final = section.get("is_final", data.get("is_final", True))
    kind = EventKind.FINAL_USER_TEXT if is_final is not False else EventKind.PARTIAL_USER_TEXT
    return [BridgeEvent(kind, text=text, speaker=Speaker.USER)]


def _decode_tentative_response(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "tentative_agent_response_internal_event")
    text = _first_text(section, "tentative_agent_response", "agent_response")
    if not text:
        return []
    return [BridgeEvent(EventKind.PARTIAL_AGENT_TEXT, text=text, speaker=Speaker.ASSISTANT)]


def _decode_agent_response(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "agent_response_event")
    text = _first_text(section, "agent_response", "text")
    if not text:
        return []
    return [BridgeEvent(EventKind.FINAL_AGENT_TEXT, text=text, speaker=Speaker.ASSISTANT)]


def _decode_correction(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "agent_response_correction_event")
    text = _first_text(section, "corrected_agent_response", "agent_response", "agent_response_correction")
    if not text:
        return []
    return [BridgeEvent(EventKind.AGENT_CORRECTION, text=text, speaker=Speaker.ASSISTANT)]


def _decode_tool_call(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "client_tool_call")
    tool_name = _first_text(section, "tool_name", "toolName", "name")
    if not tool_name:
        logger.warning("frames.tool_call.unnamed keys={}", sorted(section))
        return []
    arguments: Any = section.get("parameters", section.get("arguments", {}))
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            arguments = {"content": arguments}
    if not isinstance(arguments, Mapping):
        arguments = {}
    correlation_id = section.get("tool_call_id") or section.get("correlationId") or section.get("id")
    invocation = ToolInvocation(
        tool_name=tool_name,
        arguments=dict(arguments),
        correlation_id=str(correlation_id) if correlation_id else None,
    )
    return [BridgeEvent(EventKind.TOOL_CALL, invocation=invocation)]


def _decode_ping(data: Mapping[str, Any]) -> list[BridgeEvent]:
    section = _section(data, "ping_event")
    return [BridgeEvent(EventKind.KEEPALIVE, metadata={"event_id": section.get("event_id")})]


def _decode_interruption(_data: Mapping[str, Any]) -> list[BridgeEvent]:
    return [BridgeEvent(EventKind.TURN_BOUNDARY, speaker=Speaker.ASSISTANT)]


def _decode_turn_end(_data: Mapping[str, Any]) -> list[BridgeEvent]:
    return [BridgeEvent(EventKind.TURN_BOUNDARY)]


def _ignore(_data: Mapping[str, Any]) -> list[BridgeEvent]:
    return []


_DECODERS: dict[str, FrameDecoder] = {
    "conversation_initiation_metadata": _decode_metadata,
    "user_transcript": _decode_user_transcript,
    "internal_tentative_agent_response": _decode_tentative_response,
    "agent_response": _decode_agent_response,
    "agent_response_correction": _decode_correction,
    "client_tool_call": _decode_tool_call,
    "ping": _decode_ping,
    "interruption": _decode_interruption,
    "turn_end": _decode_turn_end,
    "end_of_turn": _decode_turn_end,
    "audio": _ignore,
    "agent_tool_response": _ignore,
    "vad_score": _ignore,
}


def decode_frame(data: Any) -> list[BridgeEvent]:
    """Translate one inbound frame into zero or more bridge events."""
    if not isinstance(data, Mapping):
        return []
    frame_type = data.get("type")
    decoder = _DECODERS.get(frame_type) if isinstance(frame_type, str) else None
    if decoder is None:
        logger.debug("frames.unknown type={}", frame_type)
        return []
    return decoder(data)


def initiation_frame(*, prompt: str | None, language: str | None) -> dict[str, Any]:
    agent: dict[str, Any] = {}
    if prompt:
        agent["prompt"] = {"prompt": prompt}
    if language:
        agent["language"] = language
    return {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {"agent": agent},
    }


def user_message_frame(text: str) -> dict[str, Any]:
    return {"type": "user_message", "text": text}


def pong_frame(event_id: Any) -> dict[str, Any]:
    return {"type": "pong", "event_id": event_id}


def tool_result_frame(correlation_id: str, result: ToolResult) -> dict[str, Any]:
    return {
        "type": "client_tool_result",
        "tool_call_id": correlation_id,
        "result": result.to_payload(),
        "is_error": not result.success,
    }

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bitbuilder.errors import TurnFinalizedError
from bitbuilder.models import BridgeEvent, ConversationTurn, EventKind, Finality, Speaker
from bitbuilder.transcript import LaneState, Transcript


def _agent(kind: EventKind, text: str = "") -> BridgeEvent:
    return BridgeEvent(kind, text=text, speaker=Speaker.ASSISTANT, source="duplex")


def _collect(transcript: Transcript) -> list[ConversationTurn]:
    finalized: list[ConversationTurn] = []

    def _on_final(_sender: Any, *, turn: ConversationTurn) -> None:
        finalized.append(turn)

    transcript.turn_finalized.connect(_on_final, weak=False)
    return finalized


@pytest.mark.asyncio
async def test_partials_then_final_leave_one_turn_with_final_text() -> None:
    transcript = Transcript(idle_timeout=5.0)
    finalized = _collect(transcript)

    transcript.apply(_agent(EventKind.PARTIAL_AGENT_TEXT, "Knock"))
    transcript.apply(_agent(EventKind.PARTIAL_AGENT_TEXT, "Knock kn"))
    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.STREAMING
    transcript.apply(_agent(EventKind.FINAL_AGENT_TEXT, "Knock knock!"))

    [turn] = transcript.turns
    assert turn.text == "Knock knock!"
    assert turn.finality is Finality.FINAL
    assert finalized == [turn]
    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.IDLE


@pytest.mark.asyncio
async def test_final_without_text_keeps_last_partial() -> None:
    transcript = Transcript(idle_timeout=5.0)

    transcript.partial(Speaker.USER, "tell me a jo")
    transcript.final(Speaker.USER, "")

    [turn] = transcript.turns
    assert turn.text == "tell me a jo"
    assert turn.is_final


@pytest.mark.asyncio
async def test_next_partial_after_final_starts_new_turn() -> None:
    transcript = Transcript(idle_timeout=5.0)

    transcript.partial(Speaker.ASSISTANT, "one")
    transcript.final(Speaker.ASSISTANT, "one!")
    transcript.partial(Speaker.ASSISTANT, "two")

    assert [turn.text for turn in transcript.turns] == ["one!", "two"]
    assert transcript.turns[0].turn_id != transcript.turns[1].turn_id
    transcript.finalize_lanes()


def test_final_on_idle_lane_appends_or_ignores_empty() -> None:
    transcript = Transcript()

    assert transcript.final(Speaker.ASSISTANT, "") is None
    turn = transcript.final(Speaker.ASSISTANT, "Who's there?")

    assert turn is not None and turn.is_final
    assert transcript.turns == [turn]


@pytest.mark.asyncio
async def test_correction_replaces_in_flight_text_without_new_turn() -> None:
    transcript = Transcript(idle_timeout=5.0)

    transcript.apply(_agent(EventKind.PARTIAL_AGENT_TEXT, "Orange you glad"))
    transcript.apply(_agent(EventKind.AGENT_CORRECTION, "Orange you glad I didn't say banana?"))

    [turn] = transcript.turns
    assert turn.text == "Orange you glad I didn't say banana?"
    assert not turn.is_final
    transcript.finalize_lanes()


def test_correction_without_in_flight_turn_is_ignored() -> None:
    transcript = Transcript()
    transcript.final(Speaker.ASSISTANT, "done")

    assert transcript.apply(_agent(EventKind.AGENT_CORRECTION, "rewritten")) is None
    assert [turn.text for turn in transcript.turns] == ["done"]


@pytest.mark.asyncio
async def test_connection_closed_finalizes_both_lanes() -> None:
    transcript = Transcript(idle_timeout=5.0)
    finalized = _collect(transcript)
    transcript.partial(Speaker.USER, "so a horse")
    transcript.partial(Speaker.ASSISTANT, "walks into")

    transcript.apply(BridgeEvent(EventKind.CONNECTION_CLOSED, source="duplex"))

    assert [turn.text for turn in finalized] == ["so a horse", "walks into"]
    assert all(turn.is_final for turn in transcript.turns)
    assert transcript.lane_state(Speaker.USER) is LaneState.IDLE
    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.IDLE


@pytest.mark.asyncio
async def test_interruption_only_finalizes_agent_lane() -> None:
    transcript = Transcript(idle_timeout=5.0)
    transcript.partial(Speaker.USER, "wait")
    transcript.partial(Speaker.ASSISTANT, "As I was say")

    transcript.apply(BridgeEvent(EventKind.TURN_BOUNDARY, speaker=Speaker.ASSISTANT))

    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.IDLE
    assert transcript.lane_state(Speaker.USER) is LaneState.STREAMING
    transcript.finalize_lanes()


@pytest.mark.asyncio
async def test_silent_streaming_turn_is_finalized_after_idle_timeout() -> None:
    transcript = Transcript(idle_timeout=0.05)
    finalized = _collect(transcript)

    transcript.partial(Speaker.ASSISTANT, "Why did the")
    await asyncio.sleep(0.15)

    assert [turn.text for turn in finalized] == ["Why did the"]
    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.IDLE


@pytest.mark.asyncio
async def test_each_partial_restarts_idle_window() -> None:
    transcript = Transcript(idle_timeout=0.1)

    transcript.partial(Speaker.ASSISTANT, "a")
    await asyncio.sleep(0.06)
    transcript.partial(Speaker.ASSISTANT, "ab")
    await asyncio.sleep(0.06)

    assert transcript.lane_state(Speaker.ASSISTANT) is LaneState.STREAMING
    transcript.finalize_lanes()


def test_finalized_turn_is_immutable() -> None:
    transcript = Transcript()
    turn = transcript.append(Speaker.SYSTEM, "notice")

    with pytest.raises(TurnFinalizedError):
        turn.revise("changed")
    with pytest.raises(TurnFinalizedError):
        turn.finalize("again")


def test_empty_partial_is_ignored() -> None:
    transcript = Transcript()

    assert transcript.partial(Speaker.USER, "") is None
    assert transcript.turns == []

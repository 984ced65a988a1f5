"""Transcript state machine.

Each streaming speaker (user and assistant) owns a lane that cycles
``idle -> streaming -> finalized -> idle``. Partial payloads carry the full
current hypothesis, so a partial simply replaces the in-flight text. Finalized
turns are frozen and only ever appended; renderers subscribe to the signals
below and never mutate turns themselves.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

from blinker import Signal
from loguru import logger

from bitbuilder.models import BridgeEvent, ConversationTurn, EventKind, Finality, Speaker

STREAMING_SPEAKERS = (Speaker.USER, Speaker.ASSISTANT)


class LaneState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"


@dataclass
class _Lane:
    speaker: Speaker
    turn: ConversationTurn | None = None
    timer: asyncio.TimerHandle | None = None

    @property
    def state(self) -> LaneState:
        return LaneState.STREAMING if self.turn is not None else LaneState.IDLE

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class Transcript:
    """Append-only conversation transcript fed by normalized bridge events."""

    def __init__(self, *, idle_timeout: float = 3.0) -> None:
        self.idle_timeout = idle_timeout
        self._turns: list[ConversationTurn] = []
        self._lanes = {speaker: _Lane(speaker) for speaker in STREAMING_SPEAKERS}
        self.turn_started = Signal("bitbuilder.transcript.turn_started")
        self.turn_updated = Signal("bitbuilder.transcript.turn_updated")
        self.turn_finalized = Signal("bitbuilder.transcript.turn_finalized")

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def lane_state(self, speaker: Speaker) -> LaneState:
        return self._lanes[speaker].state

    def get(self, turn_id: int) -> ConversationTurn | None:
        for turn in self._turns:
            if turn.turn_id == turn_id:
                return turn
        return None

    def apply(self, event: BridgeEvent) -> ConversationTurn | None:
        """Project one bridge event onto the transcript."""
        lane = event.lane
        if lane is not None:
            speaker, finality = lane
            if finality is Finality.INTERIM:
                return self.partial(speaker, event.text, source=event.source)
            return self.final(speaker, event.text, source=event.source)
        if event.kind is EventKind.AGENT_CORRECTION:
            return self.correct(event.text)
        if event.kind is EventKind.TURN_BOUNDARY:
            self.finalize_lanes(event.speaker)
        elif event.kind is EventKind.CONNECTION_CLOSED:
            self.finalize_lanes()
        return None

    def partial(self, speaker: Speaker, text: str, *, source: str = "") -> ConversationTurn | None:
        if not text:
            return None
        lane = self._lanes[speaker]
        if lane.turn is None:
            lane.turn = ConversationTurn(speaker=speaker, text=text, source=source)
            self._turns.append(lane.turn)
            self.turn_started.send(self, turn=lane.turn)
        else:
            lane.turn.revise(text)
            self.turn_updated.send(self, turn=lane.turn)
        self._schedule_idle(lane)
        return lane.turn

    def final(self, speaker: Speaker, text: str, *, source: str = "") -> ConversationTurn | None:
        lane = self._lanes[speaker]
        if lane.turn is None:
            if not text:
                return None
            return self.append(speaker, text, source=source)
        return self._finalize(lane, text)

    def correct(self, text: str) -> ConversationTurn | None:
        """Replace the text of the in-flight assistant turn, if there is one."""
        lane = self._lanes[Speaker.ASSISTANT]
        if lane.turn is None or not text:
            return None
        lane.turn.revise(text)
        self.turn_updated.send(self, turn=lane.turn)
        self._schedule_idle(lane)
        return lane.turn

    def append(self, speaker: Speaker, text: str, *, source: str = "") -> ConversationTurn:
        """Append an already-final turn (typed input, system notices, tool reports)."""
        turn = ConversationTurn(speaker=speaker, text=text, finality=Finality.FINAL, source=source)
        self._turns.append(turn)
        self.turn_finalized.send(self, turn=turn)
        return turn

    def finalize_lanes(self, speaker: Speaker | None = None) -> list[ConversationTurn]:
        """Force-finalize in-flight turns on one lane, or on every lane."""
        speakers = STREAMING_SPEAKERS if speaker is None else (speaker,)
        finalized: list[ConversationTurn] = []
        for each in speakers:
            lane = self._lanes.get(each)
            if lane is not None and lane.turn is not None:
                finalized.append(self._finalize(lane, None))
        return finalized

    def clear(self) -> None:
        for lane in self._lanes.values():
            lane.cancel_timer()
            lane.turn = None
        self._turns.clear()

    def _finalize(self, lane: _Lane, text: str | None) -> ConversationTurn:
        turn = lane.turn
        assert turn is not None
        lane.cancel_timer()
        lane.turn = None
        turn.finalize(text)
        self.turn_finalized.send(self, turn=turn)
        return turn

    def _schedule_idle(self, lane: _Lane) -> None:
        lane.cancel_timer()
        if self.idle_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        lane.timer = loop.call_later(self.idle_timeout, self._expire, lane)

    def _expire(self, lane: _Lane) -> None:
        lane.timer = None
        if lane.turn is None:
            return
        logger.info("transcript.lane.idle_timeout speaker={} turn_id={}", lane.speaker, lane.turn.turn_id)
        self._finalize(lane, None)

"""Terminal rendering of the transcript."""

from __future__ import annotations

import re
import threading
from typing import Any

from rich.console import Console
from rich.text import Text

from bitbuilder.models import ConversationTurn, Speaker
from bitbuilder.transcript import Transcript

_INLINE_PATTERN = re.compile(r"\*\*([^*]+)\*\*|`([^`]+)`")

_LABELS: dict[Speaker, tuple[str, str]] = {
    Speaker.USER: ("You", "bold cyan"),
    Speaker.ASSISTANT: ("Bit Builder", "bold yellow"),
    Speaker.SYSTEM: ("System", "bold magenta"),
    Speaker.TOOL: ("Tool", "bold green"),
}


def format_message(text: str) -> Text:
    """Render ``**bold**`` and inline code spans as rich styles."""
    rendered = Text()
    cursor = 0
    for match in _INLINE_PATTERN.finditer(text):
        rendered.append(text[cursor : match.start()])
        bold, code = match.groups()
        if bold is not None:
            rendered.append(bold, style="bold")
        else:
            rendered.append(code, style="reverse")
        cursor = match.end()
    rendered.append(text[cursor:])
    return rendered


class TranscriptRenderer:
    """Project transcript signals onto a rich console.

    Finalized turns are printed exactly once; interim turns show up as a dim
    status line that is replaced by the final turn.
    """

    def __init__(self, transcript: Transcript, console: Console | None = None) -> None:
        self.console = console or Console()
        self._transcript = transcript
        self._print_lock = threading.Lock()
        transcript.turn_started.connect(self._on_interim, weak=False)
        transcript.turn_updated.connect(self._on_interim, weak=False)
        transcript.turn_finalized.connect(self._on_final, weak=False)

    def close(self) -> None:
        self._transcript.turn_started.disconnect(self._on_interim)
        self._transcript.turn_updated.disconnect(self._on_interim)
        self._transcript.turn_finalized.disconnect(self._on_final)

    def render_turn(self, turn: ConversationTurn) -> Text:
        label, style = _LABELS[turn.speaker]
        line = Text()
        if turn.speaker is Speaker.ASSISTANT:
            line.append(f"[{turn.turn_id}] ", style="dim")
        line.append(f"{label}: ", style=style)
        if turn.speaker is Speaker.ASSISTANT:
            line.append_text(format_message(turn.text))
        else:
            line.append(turn.text)
        return line

    def _on_interim(self, _sender: Any, *, turn: ConversationTurn) -> None:
        label, _ = _LABELS[turn.speaker]
        self._print(Text(f"{label} ... {turn.text}", style="dim italic"))

    def _on_final(self, _sender: Any, *, turn: ConversationTurn) -> None:
        self._print(self.render_turn(turn))

    def _print(self, message: Text) -> None:
        with self._print_lock:
            self.console.print(message)

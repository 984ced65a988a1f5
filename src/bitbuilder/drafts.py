"""Local draft notes with debounced writes."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from loguru import logger


class DraftStore:
    """Named draft notes kept in one JSON file.

    Writes are debounced and the latest value always wins; there is a single
    writer per file so no locking is involved.
    """

    def __init__(self, path: Path, *, debounce_seconds: float = 0.5) -> None:
        self.path = path
        self.debounce_seconds = debounce_seconds
        self._drafts: dict[str, str] = self._load()
        self._timer: asyncio.TimerHandle | None = None

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("drafts.load.failed path={}", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def get(self, key: str, default: str = "") -> str:
        return self._drafts.get(key, default)

    def items(self) -> list[tuple[str, str]]:
        return sorted(self._drafts.items())

    def set(self, key: str, text: str) -> None:
        if text:
            self._drafts[key] = text
        else:
            self._drafts.pop(key, None)
        self._schedule()

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._write()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write()
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_seconds, self._write)

    def _write(self) -> None:
        self._timer = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._drafts, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.debug("drafts.written count={}", len(self._drafts))

"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar
from logging import Handler
from typing import TYPE_CHECKING, Literal

from loguru import logger
from rich import get_console
from rich.logging import RichHandler

if TYPE_CHECKING:
    import loguru

LogProfile = Literal["default", "chat"]

_NO_SESSION = "-"
_session_uid: ContextVar[str] = ContextVar("bitbuilder_session_uid", default=_NO_SESSION)
_CONFIGURED_PROFILE: LogProfile | None = None


def bind_session(uid: str | None) -> None:
    """Tag subsequent log records with the signed-in user's uid."""
    _session_uid.set(uid or _NO_SESSION)


def _inject_session(record: loguru.Record) -> None:
    record["extra"].setdefault("session", _session_uid.get())


def _chat_sink() -> Handler:
    # The transcript owns the terminal, so log lines go through the same rich console.
    return RichHandler(console=get_console(), show_time=False, show_path=False, markup=False)


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Install the loguru sink for ``profile``; repeated calls with the same profile are no-ops."""
    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved = (level or os.getenv("BITBUILDER_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.configure(patcher=_inject_session)
    if profile == "chat":
        logger.add(
            _chat_sink(),
            level="WARNING" if resolved in {"TRACE", "DEBUG", "INFO"} else resolved,
            format="{message}",
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved,
            format="{time:HH:mm:ss.SSS} | {level:<7} | {extra[session]} | {name}:{line} | {message}",
            backtrace=False,
            diagnose=False,
        )
    _CONFIGURED_PROFILE = profile

"""Client-side tools the agent may invoke."""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from google.api_core import exceptions as google_exceptions
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, StrictStr, ValidationError, field_validator

from bitbuilder.errors import ErrorCode
from bitbuilder.models import ToolInvocation, ToolResult

if TYPE_CHECKING:
    from bitbuilder.auth import AuthUser
    from bitbuilder.store import JokeStore

SAVE_JOKE = "save_joke"
DEFAULT_TAG = "untagged"


def normalize_tags(raw: Any) -> list[str]:
    """Coerce tags into a non-empty, de-duplicated list of strings."""
    items: Iterable[Any]
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = raw
    else:
        items = ()

    tags: list[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        tag = item.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags or [DEFAULT_TAG]


class SaveJokeArguments(BaseModel):
    content: StrictStr = Field(validation_alias=AliasChoices("content", "joke"))
    tags: list[str] = Field(default=None, validate_default=True)  # type: ignore[assignment]

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Joke content is required")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> list[str]:
        return normalize_tags(value)


def _shorten(text: str, width: int = 30) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


class ToolExecutor:
    """Validate tool invocations and perform their side effects.

    Holds no per-call state, so unrelated invocations may run concurrently.
    Identical content is saved again on every call and nothing is retried.
    """

    def __init__(self, store: JokeStore) -> None:
        self._store = store

    async def execute(self, invocation: ToolInvocation, owner: AuthUser | None) -> ToolResult:
        logger.info(
            "tool.call.start name={} correlation_id={} {{ content={} }}",
            invocation.tool_name,
            invocation.correlation_id or "-",
            _shorten(str(invocation.arguments.get("content", ""))),
        )
        start = time.monotonic()
        try:
            result = await self._dispatch(invocation, owner)
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", invocation.tool_name, duration * 1000)
        if not result.success:
            logger.warning("tool.call.failed name={} code={} error={}", invocation.tool_name, result.code, result.error)
        return result

    async def _dispatch(self, invocation: ToolInvocation, owner: AuthUser | None) -> ToolResult:
        if invocation.tool_name != SAVE_JOKE:
            return ToolResult.failed(ErrorCode.INVALID_ARGUMENT, f"Unknown tool: {invocation.tool_name}")
        if owner is None:
            return ToolResult.failed(ErrorCode.AUTHENTICATION_REQUIRED, "Not authenticated")
        return await self._save_joke(invocation.arguments, owner.uid)

    async def _save_joke(self, arguments: Any, owner: str) -> ToolResult:
        try:
            parsed = SaveJokeArguments.model_validate(dict(arguments) if arguments else {})
        except (ValidationError, TypeError, ValueError):
            return ToolResult.failed(ErrorCode.INVALID_ARGUMENT, "Joke content is required")

        try:
            document_id = await self._store.create_joke(owner, parsed.content, parsed.tags)
        except google_exceptions.PermissionDenied as exc:
            return ToolResult.failed(ErrorCode.PERMISSION_DENIED, f"Failed to save joke: {exc.message}")
        except Exception as exc:
            logger.exception("tool.save_joke.error owner={}", owner)
            return ToolResult.failed(ErrorCode.TOOL_EXECUTION_FAILED, f"Failed to save joke: {exc}")

        logger.info("tool.save_joke.saved id={} tags={}", document_id, parsed.tags)
        return ToolResult.ok(document_id, f"Joke saved to Bitbinder! ({document_id})")

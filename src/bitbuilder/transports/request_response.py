"""Request/response transport over HTTPS cloud callables."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from bitbuilder.errors import BridgeError, CallableError, ErrorCode
from bitbuilder.models import BridgeEvent, EventKind, Speaker
from bitbuilder.transports.base import BaseTransport, EventHandler

CHAT_WITH_AGENT = "chatWithAgent"
GET_SIGNED_URL = "getSignedUrl"
NO_RESPONSE_TEXT = "No response from agent."

TokenProvider = Callable[[], str | None]


@dataclass(frozen=True)
class ChatReply:
    conversation_id: str | None
    final_response: str


class CallableClient:
    """Client for the HTTPS callable protocol.

    Requests are ``{"data": ...}`` posted to ``<base_url>/<name>`` with the
    caller's ID token; replies carry either ``result`` or
    ``error: {status, message}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: TokenProvider,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def call(self, name: str, data: dict[str, Any] | None = None) -> Any:
        headers: dict[str, str] = {}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("callable.request name={}", name)
        try:
            response = await self._client.post(f"/{name}", json={"data": data}, headers=headers)
        except httpx.TimeoutException as exc:
            raise BridgeError(ErrorCode.RESPONSE_TIMEOUT, f"{name} timed out") from exc
        except httpx.HTTPError as exc:
            raise BridgeError(ErrorCode.CONNECTION_FAILED, f"{name} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
            logger.warning("callable.error name={} status={}", name, error.get("status"))
            raise CallableError(str(error.get("status", "INTERNAL")), str(error.get("message", "Request failed")))
        if response.is_error:
            raise CallableError("INTERNAL", f"{name} returned HTTP {response.status_code}")
        if not isinstance(payload, dict) or "result" not in payload:
            raise CallableError("INTERNAL", f"{name} returned a malformed response")
        return payload["result"]

    async def chat_with_agent(self, message: str, conversation_id: str | None) -> ChatReply:
        result = await self.call(CHAT_WITH_AGENT, {"message": message, "conversationId": conversation_id})
        if not isinstance(result, dict):
            raise CallableError("INTERNAL", f"{CHAT_WITH_AGENT} returned a malformed result")
        return ChatReply(
            conversation_id=result.get("conversationId") or conversation_id,
            final_response=str(result.get("finalResponse") or ""),
        )

    async def get_signed_url(self) -> str:
        result = await self.call(GET_SIGNED_URL)
        signed_url = result.get("signedUrl") if isinstance(result, dict) else None
        if not signed_url:
            raise CallableError("INTERNAL", f"{GET_SIGNED_URL} returned no URL")
        return str(signed_url)

    async def aclose(self) -> None:
        await self._client.aclose()


class RequestResponseTransport(BaseTransport):
    """One request per user message, one final agent reply per request."""

    name = "callable"

    def __init__(self, client: CallableClient, *, conversation_id: str | None = None) -> None:
        super().__init__()
        self._client = client
        self.conversation_id = conversation_id

    async def start(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        await self.emit(BridgeEvent(EventKind.CONNECTION_OPENED, session_id=self.conversation_id))

    async def send_text(self, text: str) -> None:
        if not text.strip():
            raise BridgeError(ErrorCode.INVALID_ARGUMENT, "Message must be a non-empty string")
        reply = await self._client.chat_with_agent(text, self.conversation_id)
        if reply.conversation_id:
            self.conversation_id = reply.conversation_id
        logger.info("callable.reply conversation_id={} length={}", self.conversation_id, len(reply.final_response))
        await self.emit(
            BridgeEvent(
                EventKind.FINAL_AGENT_TEXT,
                text=reply.final_response or NO_RESPONSE_TEXT,
                speaker=Speaker.ASSISTANT,
                session_id=self.conversation_id,
            )
        )

    async def close(self) -> None:
        await self.emit(BridgeEvent(EventKind.CONNECTION_CLOSED, session_id=self.conversation_id))
        await super().close()

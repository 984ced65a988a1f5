"""Authentication state and the password sign-in client."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from blinker import Signal
from loguru import logger

from bitbuilder.errors import AuthError, ConfigurationError

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

AuthListener = Callable[["AuthUser | None"], None]


@dataclass(frozen=True)
class AuthUser:
    """Authenticated identity with a stable uid."""

    uid: str
    email: str = ""
    display_name: str = ""
    id_token: str = ""
    refresh_token: str = ""


class AuthState:
    """Holds the current identity and notifies subscribers on change."""

    def __init__(self, user: AuthUser | None = None) -> None:
        self._user = user
        self._changed = Signal("bitbuilder.auth.changed")
        self._waiters: list[asyncio.Future[AuthUser]] = []

    @property
    def current_user(self) -> AuthUser | None:
        return self._user

    def set_user(self, user: AuthUser | None) -> None:
        if user == self._user:
            return
        self._user = user
        if user is not None:
            logger.info("auth.user.signed_in uid={}", user.uid)
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(user)
        else:
            logger.info("auth.user.signed_out")
        self._changed.send(self, user=user)

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener; it is called right away with the current user."""

        def _receiver(_sender: Any, *, user: AuthUser | None) -> None:
            listener(user)

        self._changed.connect(_receiver, weak=False)
        listener(self._user)
        return lambda: self._changed.disconnect(_receiver)

    async def wait_for_user(self, timeout: float) -> AuthUser | None:
        """Wait up to ``timeout`` seconds for an identity to become available."""
        if self._user is not None:
            return self._user
        waiter: asyncio.Future[AuthUser] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)


class FirebaseAuthClient:
    """Email/password sign-in against the Identity Toolkit REST API."""

    def __init__(
        self,
        api_key: str | None,
        state: AuthState,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("BITBUILDER_FIREBASE_API_KEY is required for sign-in")
        self._api_key = api_key
        self._state = state
        self._client = client or httpx.AsyncClient(base_url=IDENTITY_TOOLKIT_URL, timeout=timeout)

    async def sign_in_with_email(self, email: str, password: str) -> AuthUser:
        data = await self._post("accounts:signInWithPassword", {"email": email, "password": password})
        user = self._user_from(data)
        self._state.set_user(user)
        return user

    async def sign_up_with_email(self, email: str, password: str, display_name: str = "") -> AuthUser:
        data = await self._post("accounts:signUp", {"email": email, "password": password})
        if display_name:
            data = {**data, **await self._post("accounts:update", {"idToken": data["idToken"], "displayName": display_name})}
        user = self._user_from(data)
        self._state.set_user(user)
        return user

    def sign_out(self) -> None:
        self._state.set_user(None)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(
            f"/{endpoint}",
            params={"key": self._api_key},
            json={**body, "returnSecureToken": True},
        )
        payload = response.json() if response.content else {}
        if response.is_error:
            error = payload.get("error") if isinstance(payload, dict) else None
            code = error.get("message", "") if isinstance(error, dict) else ""
            logger.warning("auth.request.failed endpoint={} status={} code={}", endpoint, response.status_code, code)
            raise AuthError(code)
        return payload

    @staticmethod
    def _user_from(data: dict[str, Any]) -> AuthUser:
        return AuthUser(
            uid=data["localId"],
            email=data.get("email", ""),
            display_name=data.get("displayName", ""),
            id_token=data.get("idToken", ""),
            refresh_token=data.get("refreshToken", ""),
        )

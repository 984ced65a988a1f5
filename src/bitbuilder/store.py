"""Saved-joke document stores."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol

from google.cloud import firestore
from loguru import logger

from bitbuilder.models import SavedJoke

JOKES_COLLECTION = "jokes"

SnapshotCallback = Callable[[list[SavedJoke]], None]


class JokeStore(Protocol):
    """Contract of the hosted document store as seen by the bridge."""

    async def create_joke(self, owner: str, content: str, tags: Sequence[str]) -> str: ...

    async def update_joke(
        self, document_id: str, *, content: str | None = None, tags: Sequence[str] | None = None
    ) -> None: ...

    async def delete_joke(self, document_id: str) -> None: ...

    def watch_jokes(self, owner: str, callback: SnapshotCallback) -> Callable[[], None]: ...


class InMemoryJokeStore:
    """Process-local store with live snapshots, newest first."""

    def __init__(self) -> None:
        self._jokes: dict[str, SavedJoke] = {}
        self._watchers: dict[int, tuple[str, SnapshotCallback]] = {}
        self._next_watch = 0

    @property
    def jokes(self) -> list[SavedJoke]:
        return list(self._jokes.values())

    async def create_joke(self, owner: str, content: str, tags: Sequence[str]) -> str:
        document_id = uuid.uuid4().hex[:20]
        now = datetime.now(UTC)
        self._jokes[document_id] = SavedJoke(
            document_id=document_id,
            owner=owner,
            content=content,
            tags=tuple(tags),
            created_at=now,
            updated_at=now,
        )
        self._notify(owner)
        return document_id

    async def update_joke(
        self, document_id: str, *, content: str | None = None, tags: Sequence[str] | None = None
    ) -> None:
        current = self._jokes.get(document_id)
        if current is None:
            raise KeyError(document_id)
        self._jokes[document_id] = replace(
            current,
            content=current.content if content is None else content,
            tags=current.tags if tags is None else tuple(tags),
            updated_at=datetime.now(UTC),
        )
        self._notify(current.owner)

    async def delete_joke(self, document_id: str) -> None:
        removed = self._jokes.pop(document_id, None)
        if removed is None:
            raise KeyError(document_id)
        self._notify(removed.owner)

    def watch_jokes(self, owner: str, callback: SnapshotCallback) -> Callable[[], None]:
        watch_id = self._next_watch
        self._next_watch += 1
        self._watchers[watch_id] = (owner, callback)
        callback(self._snapshot(owner))

        def _unsubscribe() -> None:
            self._watchers.pop(watch_id, None)

        return _unsubscribe

    def _snapshot(self, owner: str) -> list[SavedJoke]:
        owned = [joke for joke in self._jokes.values() if joke.owner == owner]
        return sorted(owned, key=lambda joke: joke.created_at, reverse=True)

    def _notify(self, owner: str) -> None:
        for watched_owner, callback in list(self._watchers.values()):
            if watched_owner == owner:
                callback(self._snapshot(owner))


def _joke_from_document(document_id: str, data: dict[str, Any]) -> SavedJoke:
    # Server timestamps stay unresolved in local snapshots until the write commits.
    now = datetime.now(UTC)
    return SavedJoke(
        document_id=document_id,
        owner=str(data.get("userId", "")),
        content=str(data.get("content", "")),
        tags=tuple(str(tag) for tag in data.get("tags") or ()),
        created_at=data.get("createdAt") or now,
        updated_at=data.get("updatedAt") or now,
    )


class FirestoreJokeStore:
    """Joke store backed by Cloud Firestore."""

    def __init__(
        self,
        client: firestore.AsyncClient | None = None,
        *,
        project: str | None = None,
        watch_client: firestore.Client | None = None,
    ) -> None:
        self._client = client or firestore.AsyncClient(project=project)
        self._project = project
        self._watch_client = watch_client

    async def create_joke(self, owner: str, content: str, tags: Sequence[str]) -> str:
        _, reference = await self._client.collection(JOKES_COLLECTION).add({
            "userId": owner,
            "content": content,
            "tags": list(tags),
            "createdAt": firestore.SERVER_TIMESTAMP,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })
        logger.info("store.joke.created id={} owner={}", reference.id, owner)
        return reference.id

    async def update_joke(
        self, document_id: str, *, content: str | None = None, tags: Sequence[str] | None = None
    ) -> None:
        fields: dict[str, Any] = {"updatedAt": firestore.SERVER_TIMESTAMP}
        if content is not None:
            fields["content"] = content
        if tags is not None:
            fields["tags"] = list(tags)
        await self._client.collection(JOKES_COLLECTION).document(document_id).update(fields)

    async def delete_joke(self, document_id: str) -> None:
        await self._client.collection(JOKES_COLLECTION).document(document_id).delete()

    def watch_jokes(self, owner: str, callback: SnapshotCallback) -> Callable[[], None]:
        """Subscribe to the owner's jokes, newest first.

        Firestore delivers snapshots on its own listener thread; when called from
        inside an event loop, snapshots are handed back to that loop.
        """
        if self._watch_client is None:
            self._watch_client = firestore.Client(project=self._project)
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        query = (
            self._watch_client.collection(JOKES_COLLECTION)
            .where(filter=firestore.FieldFilter("userId", "==", owner))
            .order_by("createdAt", direction=firestore.Query.DESCENDING)
        )

        def _on_snapshot(documents: list[Any], _changes: Any, _read_time: Any) -> None:
            jokes = [_joke_from_document(document.id, document.to_dict() or {}) for document in documents]
            if loop is not None:
                loop.call_soon_threadsafe(callback, jokes)
            else:
                callback(jokes)

        watch = query.on_snapshot(_on_snapshot)
        return watch.unsubscribe

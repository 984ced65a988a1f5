"""Command line entry points."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape

from bitbuilder.auth import AuthState, FirebaseAuthClient
from bitbuilder.config import Settings, get_settings
from bitbuilder.drafts import DraftStore
from bitbuilder.errors import BitBuilderError
from bitbuilder.models import SavedJoke
from bitbuilder.orchestrator import BridgeOrchestrator, InputState
from bitbuilder.prompts import MAX_CONTEXT_JOKES, build_system_prompt
from bitbuilder.render import TranscriptRenderer
from bitbuilder.store import FirestoreJokeStore, JokeStore
from bitbuilder.tools import ToolExecutor
from bitbuilder.transports import (
    CallableClient,
    DuplexTransport,
    RequestResponseTransport,
    SessionConfig,
    SignedUrlProvider,
)

app = typer.Typer(name="bitbuilder", help="Talk to the Bit Builder joke agent.", add_completion=False)

QUIT_COMMANDS = {"/quit", "/exit", "/q"}
HELP_TEXT = "Commands: /save N [tags]  /note [text]  /jokes  /quit"
SAVE_USAGE = "Usage: /save N [tags]"


class TransportChoice(StrEnum):
    CALLABLE = "callable"
    DUPLEX = "duplex"


@dataclass
class ChatRuntime:
    settings: Settings
    auth: AuthState
    auth_client: FirebaseAuthClient
    callables: CallableClient
    store: JokeStore
    orchestrator: BridgeOrchestrator
    renderer: TranscriptRenderer
    drafts: DraftStore

    async def aclose(self) -> None:
        await self.orchestrator.close()
        self.renderer.close()
        self.drafts.flush()
        await self.callables.aclose()
        await self.auth_client.aclose()


def build_clients(settings: Settings) -> tuple[AuthState, FirebaseAuthClient, CallableClient]:
    auth = AuthState()
    auth_client = FirebaseAuthClient(settings.firebase_api_key, auth, timeout=settings.request_timeout_seconds)

    def _token() -> str | None:
        user = auth.current_user
        return user.id_token if user else None

    callables = CallableClient(
        settings.callable_base_url(),
        token_provider=_token,
        timeout=settings.request_timeout_seconds,
    )
    return auth, auth_client, callables


def build_runtime(settings: Settings, console: Console | None = None) -> ChatRuntime:
    auth, auth_client, callables = build_clients(settings)
    store = FirestoreJokeStore(project=settings.project_id)
    orchestrator = BridgeOrchestrator(settings, auth, ToolExecutor(store))
    return ChatRuntime(
        settings=settings,
        auth=auth,
        auth_client=auth_client,
        callables=callables,
        store=store,
        orchestrator=orchestrator,
        renderer=TranscriptRenderer(orchestrator.transcript, console),
        drafts=DraftStore(settings.drafts_path, debounce_seconds=settings.drafts_debounce_seconds),
    )


class InteractiveChat:
    """Read-eval loop over a signed-in ``ChatRuntime``."""

    def __init__(self, runtime: ChatRuntime, *, transport: TransportChoice = TransportChoice.DUPLEX) -> None:
        self.runtime = runtime
        self.transport = transport
        self.console = runtime.renderer.console
        self._jokes: list[SavedJoke] = []
        self._jokes_loaded = asyncio.Event()
        self._ready = asyncio.Event()
        self._ready.set()
        runtime.orchestrator.input_changed.connect(self._on_input_changed, weak=False)

    async def run(self, email: str, password: str) -> None:
        runtime = self.runtime
        try:
            user = await runtime.auth_client.sign_in_with_email(email, password)
            self.console.print(f"[green]Signed in as {user.email or user.uid}[/green]")
            unwatch = runtime.store.watch_jokes(user.uid, self._on_jokes)
            try:
                if await runtime.orchestrator.start() is None:
                    return
                if not await self._attach():
                    return
                self.console.print(f"[dim]{escape(HELP_TEXT)}[/dim]")
                await self._loop()
            finally:
                unwatch()
        finally:
            await runtime.aclose()

    async def _attach(self) -> bool:
        runtime = self.runtime
        settings = runtime.settings
        fallback = RequestResponseTransport(runtime.callables)
        if self.transport is TransportChoice.CALLABLE:
            return await runtime.orchestrator.attach(fallback)
        prompt = settings.system_prompt or await self._context_prompt(settings.jokes_wait_seconds)
        duplex = DuplexTransport(
            signed_urls=SignedUrlProvider(runtime.callables, refresh_seconds=settings.signed_url_refresh_seconds),
            url=settings.convai_url,
            session_config=SessionConfig(prompt=prompt, language=settings.language),
            keepalive_deadline=settings.keepalive_deadline_seconds,
        )
        return await runtime.orchestrator.attach(duplex, fallback=fallback)

    async def _context_prompt(self, wait_seconds: float) -> str:
        try:
            await asyncio.wait_for(self._jokes_loaded.wait(), timeout=wait_seconds)
        except TimeoutError:
            logger.warning("cli.jokes.snapshot_timeout wait={}", wait_seconds)
        return build_system_prompt([joke.content for joke in self._jokes[:MAX_CONTEXT_JOKES]])

    async def _loop(self) -> None:
        while True:
            await self._ready.wait()
            try:
                line = await asyncio.to_thread(self.console.input, "[bold cyan]> [/bold cyan]")
            except (EOFError, KeyboardInterrupt):
                return
            line = line.strip()
            if not line:
                continue
            if line in QUIT_COMMANDS:
                return
            if line.startswith("/"):
                await self._command(line)
                continue
            await self.runtime.orchestrator.send(line)

    async def _command(self, line: str) -> None:
        name, _, rest = line.partition(" ")
        match name:
            case "/save":
                await self._save(rest)
            case "/note":
                self._note(rest)
            case "/jokes":
                self._show_jokes()
            case _:
                self.console.print(f"[yellow]{escape(HELP_TEXT)}[/yellow]")

    async def _save(self, rest: str) -> None:
        parts = rest.split()
        if not parts or not parts[0].isdigit():
            self.console.print(f"[yellow]{escape(SAVE_USAGE)}[/yellow]")
            return
        await self.runtime.orchestrator.save_turn(int(parts[0]), ",".join(parts[1:]) or None)

    def _note(self, text: str) -> None:
        drafts = self.runtime.drafts
        if text:
            drafts.set("note", text)
            self.console.print("[dim]Note saved.[/dim]")
        else:
            self.console.print(escape(drafts.get("note")) or "[dim](no note)[/dim]")

    def _show_jokes(self) -> None:
        if not self._jokes:
            self.console.print("[dim]No saved jokes yet.[/dim]")
            return
        for joke in self._jokes:
            tags = ", ".join(joke.tags)
            self.console.print(f"- {escape(joke.content)} [dim]({escape(tags)})[/dim]")

    def _on_jokes(self, jokes: list[SavedJoke]) -> None:
        self._jokes = list(jokes)
        self._jokes_loaded.set()
        logger.debug("cli.jokes.snapshot count={}", len(jokes))

    def _on_input_changed(self, _sender: Any, *, state: InputState) -> None:
        if state is InputState.ENABLED:
            self._ready.set()
        else:
            self._ready.clear()


@app.command()
def chat(
    email: str = typer.Option(..., "--email", "-e", help="Account email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Account password"),
    transport: TransportChoice = typer.Option(  # noqa: B008
        TransportChoice.DUPLEX, "--transport", "-t", help="Streaming duplex session or request/response callable"
    ),
) -> None:
    """Sign in and chat with the agent."""

    settings = get_settings(profile="chat")
    try:
        runtime = build_runtime(settings)
        asyncio.run(InteractiveChat(runtime, transport=transport).run(email, password))
    except BitBuilderError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc


@app.command("signed-url")
def signed_url(
    email: str = typer.Option(..., "--email", "-e", help="Account email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Account password"),
) -> None:
    """Print a short-lived signed URL for a duplex agent session."""

    settings = get_settings()
    try:
        url = asyncio.run(_fetch_signed_url(settings, email, password))
    except BitBuilderError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(url)


async def _fetch_signed_url(settings: Settings, email: str, password: str) -> str:
    _, auth_client, callables = build_clients(settings)
    try:
        await auth_client.sign_in_with_email(email, password)
        return await callables.get_signed_url()
    finally:
        await callables.aclose()
        await auth_client.aclose()

"""CLI entry point for ThoughtTree."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from thoughttree import __version__
from thoughttree.acp.messages import EventName
from thoughttree.acp.prompt import Turn, load_image
from thoughttree.bridge import BridgeService
from thoughttree.config import ConfigStore
from thoughttree.debug_log import export_logs_to_file, log, setup_debug_logging
from thoughttree.errors import (
    PermissionRequestNotFound,
    ProtocolError,
    ThoughtTreeError,
    user_message,
)
from thoughttree.limits import DEFAULT_SEARCH_LIMIT
from thoughttree.paths import get_debug_log_path
from thoughttree.providers import BUILTIN_PROVIDERS, ProviderKind

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

T = TypeVar("T")

PROVIDER_CHOICES = tuple(kind.value for kind in ProviderKind)


class TerminalSink:
    """Event sink that streams agent output to stdout and asks about escalations."""

    def __init__(self, *, show_thoughts: bool = False) -> None:
        self.show_thoughts = show_thoughts
        self.bridge: BridgeService | None = None
        self._prompts: set[asyncio.Task[None]] = set()

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        if event == EventName.STREAM_CHUNK:
            click.echo(payload["chunk"], nl=False)
        elif event == EventName.THOUGHT_CHUNK:
            if self.show_thoughts:
                click.secho(payload["chunk"], fg="bright_black", nl=False)
        elif event == EventName.TOOL_CALL:
            status = f" [{payload['status']}]" if payload.get("status") else ""
            click.secho(f"\n> {payload['title']}{status}", fg="cyan", err=True)
        elif event == EventName.PERMISSION_REQUEST:
            task = asyncio.get_running_loop().create_task(self._ask(payload))
            self._prompts.add(task)
            task.add_done_callback(self._prompts.discard)

    async def _ask(self, payload: dict[str, Any]) -> None:
        options = payload["options"]
        click.echo(err=True)
        click.secho(
            f"Permission requested: {payload['tool_name']}", fg="yellow", bold=True, err=True
        )
        click.echo(f"  {payload['description']}", err=True)
        for index, option in enumerate(options, start=1):
            click.echo(f"  {index}. {option['label']} ({option['id']})", err=True)

        if self.bridge is None:
            return
        try:
            choice = await _in_daemon_thread(_prompt_choice, len(options))
        except click.Abort:
            self.bridge.pending.discard(payload["id"])
            return
        try:
            self.bridge.respond_to_permission(payload["id"], options[choice - 1]["id"])
        except PermissionRequestNotFound:
            click.secho("The agent no longer needs this permission.", fg="yellow", err=True)


def _prompt_choice(count: int) -> int:
    return click.prompt("Choose an option", type=click.IntRange(1, count), err=True)


async def _in_daemon_thread(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call without tying interpreter exit to its completion."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def _settle(result: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _runner() -> None:
        try:
            result = func(*args)
        except BaseException as exc:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_settle, None, exc)
            return
        if not loop.is_closed():
            loop.call_soon_threadsafe(_settle, result, None)

    threading.Thread(target=_runner, name="thoughttree-prompt", daemon=True).start()
    return await future


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except ThoughtTreeError as exc:
        raise click.ClickException(user_message(exc)) from exc


def _store(ctx: click.Context) -> ConfigStore:
    return ctx.obj["store"]


@click.group()
@click.version_option(__version__, prog_name="thoughttree")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (defaults to the user config directory)",
)
@click.option(
    "--debug-log",
    "debug_log",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the session debug log to this file on exit",
)
@click.option("-v", "--verbose", is_flag=True, help="Print info-level logs to stderr")
@click.pass_context
def cli(
    ctx: click.Context, config_path: Path | None, debug_log: Path | None, verbose: bool
) -> None:
    """Ask ACP coding agents about your notes, read-only."""
    setup_debug_logging(logging.INFO if verbose else logging.WARNING)
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        store = ConfigStore(config_path)
    except ThoughtTreeError as exc:
        raise click.ClickException(user_message(exc)) from exc
    ctx.obj = {"store": store}

    if debug_log is not None:

        def _export() -> None:
            count = export_logs_to_file(debug_log)
            click.secho(f"Wrote {count} log entries to {debug_log}", fg="bright_black", err=True)

        ctx.call_on_close(_export)


@cli.command()
@click.argument("prompt")
@click.option(
    "-p",
    "--provider",
    type=click.Choice(PROVIDER_CHOICES, case_sensitive=False),
    default=None,
    help="Agent provider (defaults to the configured one)",
)
@click.option("-m", "--model", default=None, help="Model identifier for this session")
@click.option(
    "-i",
    "--image",
    "images",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Attach an image (repeatable)",
)
@click.option("--thoughts", is_flag=True, help="Also print the agent's reasoning")
@click.pass_context
def ask(
    ctx: click.Context,
    prompt: str,
    provider: str | None,
    model: str | None,
    images: tuple[Path, ...],
    thoughts: bool,
) -> None:
    """Send PROMPT to an agent running in the notes directory."""
    store = _store(ctx)

    async def _ask() -> str:
        attachments = tuple([await load_image(path) for path in images])
        sink = TerminalSink(show_thoughts=thoughts)
        bridge = BridgeService(store, sink)
        sink.bridge = bridge
        turns = [Turn(role="user", content=prompt, images=attachments)]
        try:
            return await bridge.run_session(uuid.uuid4().hex, turns, provider, model)
        finally:
            await bridge.shutdown()

    try:
        stop_reason = asyncio.run(_ask())
    except ProtocolError as exc:
        log_path = get_debug_log_path()
        export_logs_to_file(log_path)
        raise click.ClickException(f"{user_message(exc)}\nDebug log written to {log_path}") from exc
    except ThoughtTreeError as exc:
        raise click.ClickException(user_message(exc)) from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo()
    log.info(f"[cli] Session finished: {stop_reason}")
    if stop_reason != "end_turn":
        click.secho(f"(stopped: {stop_reason})", fg="yellow", err=True)


@cli.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """Show which agent providers are available."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    current = _store(ctx).config.provider
    for kind in ProviderKind:
        status = bridge.check_provider(kind)
        marker = "*" if kind is current else " "
        name = BUILTIN_PROVIDERS[kind].display_name
        if status.available:
            click.secho(f"{marker} {kind.value:<12} {name}: available", fg="green")
        else:
            click.secho(f"{marker} {kind.value:<12} {name}: unavailable", fg="red")
            click.echo(f"    {status.error_message}")


@cli.command()
@click.argument("query", default="")
@click.option(
    "-n",
    "--limit",
    type=click.IntRange(min=1),
    default=DEFAULT_SEARCH_LIMIT,
    show_default=True,
)
@click.pass_context
def search(ctx: click.Context, query: str, limit: int) -> None:
    """List notes whose path contains QUERY."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    try:
        matches = bridge.search_files(query, limit)
    except ThoughtTreeError as exc:
        raise click.ClickException(user_message(exc)) from exc
    for match in matches:
        click.echo(match)


@cli.group()
def config() -> None:
    """Inspect and change settings."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the current settings."""
    store = _store(ctx)
    settings = store.config
    click.echo(f"config file:      {store.path}")
    click.echo(f"notes directory:  {settings.notes_directory or '(not set)'}")
    click.echo(f"provider:         {settings.provider.value}")
    for kind in ProviderKind:
        path = settings.provider_paths.get(kind, "(auto)")
        model = settings.model_preferences.get(kind, "(default)")
        click.echo(f"{kind.value + ':':<17} path={path} model={model}")


@config.command("set-notes-dir")
@click.argument("path", type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
def config_set_notes_dir(ctx: click.Context, path: Path) -> None:
    """Set the notes directory agents are confined to."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    directory = _run(bridge.set_notes_directory(path.expanduser().absolute()))
    click.secho(f"Notes directory set to {directory}", fg="green")


@config.command("set-provider")
@click.argument("provider", type=click.Choice(PROVIDER_CHOICES, case_sensitive=False))
@click.pass_context
def config_set_provider(ctx: click.Context, provider: str) -> None:
    """Select the default agent provider."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    kind = _run(bridge.set_provider(provider))
    click.secho(f"Provider set to {kind.value}", fg="green")


@config.command("set-provider-path")
@click.argument("provider", type=click.Choice(PROVIDER_CHOICES, case_sensitive=False))
@click.argument("path", required=False, default=None)
@click.pass_context
def config_set_provider_path(ctx: click.Context, provider: str, path: str | None) -> None:
    """Override (or with no PATH, clear) the executable used for PROVIDER."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    _run(bridge.set_provider_path(provider, path))
    if path is None:
        click.secho(f"Cleared executable override for {provider}", fg="green")
    else:
        click.secho(f"{provider} will use {path}", fg="green")


@config.command("set-model")
@click.argument("provider", type=click.Choice(PROVIDER_CHOICES, case_sensitive=False))
@click.argument("model", required=False, default=None)
@click.pass_context
def config_set_model(ctx: click.Context, provider: str, model: str | None) -> None:
    """Set (or with no MODEL, clear) the preferred model for PROVIDER."""
    bridge = BridgeService(_store(ctx), TerminalSink())
    _run(bridge.set_model_preference(provider, model))
    if model:
        click.secho(f"{provider} will use model {model}", fg="green")
    else:
        click.secho(f"Cleared model preference for {provider}", fg="green")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

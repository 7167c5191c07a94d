"""kestrel-chat CLI interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, cast

import click  # type: ignore[import-not-found]
import pydantic as pd
from rich.console import Console  # type: ignore[import-not-found]
from rich.markup import escape  # type: ignore[import-not-found]
from rich.table import Table  # type: ignore[import-not-found]

from kestrel_chat.core.models import PERMISSION_RESPONSES

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging from settings; --verbose forces debug output."""
    from kestrel_chat.core.settings import settings

    log_format = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=log_format,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def run_async(coro: Any) -> None:
    """Helper to run async function in sync context"""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        sys.exit(0)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """kestrel-chat - reconcile and follow agent chat sessions"""
    setup_logging(verbose)


@click.command()
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--history",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with the session's stored messages",
)
@click.option("--session", "session_id", help="Session to reconcile (default: inferred)")
@click.option("--project", "project_id", default="replay", help="Project id for the replay")
def replay(events_file: Path, history: Path | None, session_id: str | None, project_id: str) -> None:
    """Reconcile a recorded event log offline and print the transcript"""

    async def _replay() -> None:
        from kestrel_chat.chat.runtime import ChatRuntime
        from kestrel_chat.cli.replay import (
            RecordedBackend,
            infer_session_id,
            load_events,
            load_history,
            render_transcript,
        )

        try:
            events = load_events(events_file)
            entries = load_history(history) if history else []
        except (OSError, ValueError) as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)

        session = session_id or infer_session_id(entries, events)
        if session is None:
            console.print("[red]Error: Could not infer a session id; pass --session[/red]")
            sys.exit(1)

        runtime = ChatRuntime(RecordedBackend(session, entries), project_id, session)
        if not await runtime.load():
            console.print(f"[red]Error: {escape(runtime.error or 'load failed')}[/red]")
            sys.exit(1)

        handled = sum(1 for event in events if runtime.handle_event(event).handled)

        console.print(render_transcript(runtime.messages))
        console.print(
            f"[dim]{handled}/{len(events)} events handled, session {escape(session)} "
            f"is {runtime.session_status.type}[/dim]"
        )
        if runtime.error:
            console.print(f"[red]Session error: {escape(runtime.error)}[/red]")
        for permission in runtime.permissions.items:
            console.print(f"[yellow]Pending permission {permission.id}: {escape(permission.title)}[/yellow]")

    run_async(_replay())


@click.command()
@click.argument("project_id")
@click.option("--session", "session_id", help="Session to follow (default: first listed)")
def follow(project_id: str, session_id: str | None) -> None:
    """Follow a project's live event stream and print replies as they finish"""

    async def _follow() -> None:
        from kestrel_chat.chat.runtime import ChatRuntime
        from kestrel_chat.cli.replay import render_transcript
        from kestrel_chat.client.http_client import create_backend
        from kestrel_chat.core.actions import HandlerResult
        from kestrel_chat.core.events import Events, RawEvent

        def on_event(event: RawEvent, result: HandlerResult) -> None:
            if not result.handled:
                return
            if event.type == Events.PERMISSION_UPDATED and runtime.current_permission is not None:
                permission = runtime.current_permission
                console.print(
                    f"[yellow]Permission requested ({permission.id}): {escape(permission.title)}[/yellow]"
                )
            elif event.type in (Events.SESSION_IDLE, Events.SESSION_STATUS) and not runtime.is_running:
                last = runtime.messages[-1:]
                if last and last[0].role == "assistant":
                    console.print(render_transcript(last))
            elif event.type == Events.SESSION_ERROR and runtime.error:
                console.print(f"[red]Session error: {escape(runtime.error)}[/red]")

        runtime = ChatRuntime(create_backend(), project_id, session_id, on_event=on_event)
        if not await runtime.load():
            console.print(f"[red]Error: {escape(runtime.error or 'load failed')}[/red]")
            sys.exit(1)

        console.print(render_transcript(runtime.messages))
        console.print(f"[dim]Following session {runtime.session_id} (Ctrl-C to stop)[/dim]")
        await runtime.start_stream()
        try:
            await runtime.wait_stream()
        finally:
            await runtime.stop_stream()

        if runtime.error:
            console.print(f"[red]Error: {escape(runtime.error)}[/red]")
            sys.exit(1)

    run_async(_follow())


@click.command()
@click.argument("project_id")
@click.argument("session_id")
def permissions(project_id: str, session_id: str) -> None:
    """List pending permission requests for a session"""

    async def _list() -> None:
        from kestrel_chat.client.http_client import create_backend
        from kestrel_chat.core.exceptions import KestrelChatError
        from kestrel_chat.core.models import PermissionRequest

        backend = create_backend()
        try:
            pending = await backend.list_permissions(project_id, session_id)
        except KestrelChatError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)

        if not pending:
            console.print("[dim]No pending permissions[/dim]")
            return

        table = Table()
        table.add_column("ID", style="cyan")
        table.add_column("Type", style="green")
        table.add_column("Title")
        table.add_column("Pattern", style="dim")

        for item in pending:
            try:
                request = PermissionRequest.model_validate(item)
            except pd.ValidationError as e:
                console.print(f"[yellow]Skipping unreadable permission: {escape(str(e))}[/yellow]")
                continue
            pattern = request.pattern
            if isinstance(pattern, list):
                pattern = ", ".join(pattern)
            table.add_row(request.id, request.type, escape(request.title), escape(pattern or ""))

        console.print(table)

    run_async(_list())


@click.command()
@click.argument("project_id")
@click.argument("session_id")
@click.argument("permission_id")
@click.argument("response", type=click.Choice(PERMISSION_RESPONSES))
def respond(project_id: str, session_id: str, permission_id: str, response: str) -> None:
    """Answer a pending permission request"""

    async def _respond() -> None:
        from kestrel_chat.client.http_client import create_backend
        from kestrel_chat.core.exceptions import KestrelChatError

        backend = create_backend()
        try:
            await backend.respond_to_permission(project_id, session_id, permission_id, response)
        except KestrelChatError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)

        console.print(f"[green]Permission {permission_id} answered: {response}[/green]")

    run_async(_respond())


cast(Any, cli).add_command(replay)
cast(Any, cli).add_command(follow)
cast(Any, cli).add_command(permissions)
cast(Any, cli).add_command(respond)


if __name__ == "__main__":
    cli()

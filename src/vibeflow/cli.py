"""VibeFlow CLI - session flow tracking for the terminal."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from vibeflow import __version__
from vibeflow.config import EngineConfig, VibeFlowSettings
from vibeflow.context.engine import SessionEngine
from vibeflow.context.flow import format_clock, format_duration
from vibeflow.context.models import SessionView, TimeEcho
from vibeflow.context.store import SessionStore
from vibeflow.errors import ConfigError, NoActiveSessionError, VibeFlowError
from vibeflow.log import setup_logging
from vibeflow.repo import resolve_repo_key

app = typer.Typer(
    name="vf",
    help="Track work sessions, flow state, parked thoughts and time echoes per repository.",
    no_args_is_help=True,
)
thoughts_app = typer.Typer(help="Manage parked thoughts for this repo.")
echoes_app = typer.Typer(help="Manage time echoes delivered to this repo.")
trace_app = typer.Typer(help="Mirror session summaries into .vibeflow/trace.json.")
mcp_app = typer.Typer(help="MCP server for AI coding agents.")

app.add_typer(thoughts_app, name="thoughts")
app.add_typer(echoes_app, name="echoes")
app.add_typer(trace_app, name="trace")
app.add_typer(mcp_app, name="mcp")

console = Console()

FLOW_LABELS = {
    "deep-flow": "[green]Deep flow[/green]",
    "drift": "[yellow]Drift[/yellow]",
    "context-loss": "[red]Context loss[/red]",
    "steady": "[cyan]Steady[/cyan]",
}


@dataclass
class CliState:
    settings: VibeFlowSettings
    idle_timeout: str | None


def version_callback(value: bool) -> None:
    if value:
        console.print(f"vibeflow {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    idle_timeout: Annotated[
        Optional[str],
        typer.Option("--idle-timeout", help="Auto-end after inactivity: minutes, '4h' or 'off'"),
    ] = None,
) -> None:
    """VibeFlow - intent, context and flow for your terminal sessions."""
    settings = VibeFlowSettings()
    setup_logging(settings.log_level)
    ctx.obj = CliState(settings=settings, idle_timeout=idle_timeout or settings.idle_timeout)


# ── Helpers ──────────────────────────────────────────────────────


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


@contextmanager
def open_engine(ctx: typer.Context) -> Iterator[SessionEngine]:
    """Load the store, sweep idle sessions, and flush on the way out."""
    state: CliState = ctx.obj
    try:
        config = EngineConfig.for_cli(state.idle_timeout)
    except ConfigError as exc:
        _fail(str(exc))

    engine = SessionEngine(SessionStore(state.settings.resolve_data_dir()), config)
    try:
        for session in engine.tick():
            console.print(f"[dim]Session {session.id} in {session.repo_name} auto-ended after inactivity.[/dim]")
        yield engine
    except NoActiveSessionError:
        _fail("No active session. Run `vf start` first.")
    except (VibeFlowError, ValueError) as exc:
        _fail(str(exc))
    finally:
        engine.close()


def _repo_key(path: Path | None = None) -> str:
    return resolve_repo_key(path or Path.cwd())


def _join(words: list[str]) -> str:
    return " ".join(words).strip()


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def print_session_summary(view: SessionView) -> None:
    summary = view.flow_summary
    if view.is_active:
        status = "[green]Active[/green]" + (" [yellow](paused)[/yellow]" if view.paused else "")
    else:
        status = f"Ended ({view.end_reason or 'end'})"

    console.print(f"Repo: [bold]{view.repo_name}[/bold]")
    console.print(f"Session ID: {view.id}")
    console.print(f"Status: {status}")
    console.print(f"Started: {_fmt_time(view.started_at)}")
    if view.ended_at:
        console.print(f"Ended: {_fmt_time(view.ended_at)}")
    if summary:
        console.print(f"Duration: {format_duration(summary.session_duration_ms)}")
        console.print(
            f"Flow: {FLOW_LABELS[summary.label]} "
            f"[dim](active {format_duration(summary.total_active_ms)}, "
            f"idle {format_duration(summary.total_idle_ms)})[/dim]"
        )
    console.print(f"Intent: {view.intent.text if view.intent else '[dim]Not set[/dim]'}")
    console.print(f"Parked: {len(view.parked_thoughts)}")
    if view.time_echoes:
        console.print(f"Echoes for next session: {len(view.time_echoes)}")


def print_echoes(echoes: list[TimeEcho], title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Left", style="dim")
    table.add_column("Echo")
    for echo in echoes:
        table.add_row(echo.id, _fmt_time(echo.created_at), echo.text)
    console.print(table)


def build_receipt(view: SessionView) -> list[str]:
    summary = view.flow_summary
    label = summary.label if summary else "steady"
    touched = sorted(
        view.file_touches.items(),
        key=lambda item: (item[1].writes, item[1].reads, item[1].last_touched),
        reverse=True,
    )
    lines = [
        "VibeFlow Session Receipt",
        f"Session ID: {view.id}",
        f"Project: {view.repo_key}",
        f"Started: {_fmt_time(view.started_at)}",
    ]
    if view.ended_at:
        lines.append(f"Ended: {_fmt_time(view.ended_at)}")
    duration = format_duration(summary.session_duration_ms) if summary else "-"
    lines += [
        f"Duration: {duration} ({label})",
        f"Intent updates: {len(view.intents)}",
        f"Context notes: {len(view.parked_thoughts)}",
        f"Intent: {view.intent.text if view.intent else 'No intent set'}",
    ]
    if summary and summary.deep_flow_blocks:
        lines.append(f"Longest deep flow: {format_duration(summary.longest_deep_flow_ms)}")
    if touched:
        lines.append(f"Touched files: {', '.join(path for path, _ in touched[:8])}")
    return lines


# ── Session commands ─────────────────────────────────────────────


@app.command()
def start(
    ctx: typer.Context,
    path: Annotated[Optional[Path], typer.Argument(help="Working directory (default: current)")] = None,
) -> None:
    """Start a session for the current repository."""
    cwd = (path or Path.cwd()).resolve()
    handle = _repo_key(cwd)
    with open_engine(ctx) as engine:
        existing = engine.get_active_session(handle)
        if existing:
            console.print("[yellow]Session already active:[/yellow]")
            print_session_summary(existing)
            return

        engine.start_session(handle, "cli-start", cwd=cwd)
        console.print("[green]Session started.[/green]")
        print_session_summary(engine.get_active_session(handle))

        echoes = engine.drain_time_echoes(handle)
        if echoes:
            console.print()
            print_echoes(echoes, "Time echoes from your last session")
            console.print("[dim]Keep one with `vf echoes park <id>` or drop it with `vf echoes discard <id>`.[/dim]")


@app.command()
def end(ctx: typer.Context) -> None:
    """End the current session."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        session = engine.end_session(handle, "cli-end")
        if session is None:
            _fail("No active session to end.")
        console.print("[green]Session ended.[/green]")
        print_session_summary(engine.get_session(session.id))


@app.command()
def intent(
    ctx: typer.Context,
    text: Annotated[list[str], typer.Argument(help="What you intend to do")],
) -> None:
    """Set the intent for the current session."""
    with open_engine(ctx) as engine:
        engine.set_intent(_repo_key(), _join(text))
        console.print("[green]Intent saved.[/green]")


@app.command()
def park(
    ctx: typer.Context,
    text: Annotated[list[str], typer.Argument(help="Thought to park")],
) -> None:
    """Park a thought so it stays visible across sessions on this repo."""
    with open_engine(ctx) as engine:
        thought = engine.add_parked_thought(_repo_key(), _join(text))
        console.print(f"[green]Thought parked:[/green] {thought.id}")


@app.command()
def echo(
    ctx: typer.Context,
    text: Annotated[list[str], typer.Argument(help="Note for your next session")],
) -> None:
    """Leave a time echo for the next session on this repo."""
    with open_engine(ctx) as engine:
        engine.queue_time_echo(_repo_key(), _join(text))
        console.print("[green]Time echo saved.[/green] It will greet your next session.")


@app.command()
def activity(
    ctx: typer.Context,
    source: Annotated[str, typer.Option("--source", "-s", help="Activity source tag")] = "shell",
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Exit silently without a session")] = False,
) -> None:
    """Record activity (for shell prompt hooks)."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        if quiet and engine.get_active_session(handle) is None:
            return
        engine.record_activity(handle, source)


@app.command()
def touch(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="File that was read or written")],
    read: Annotated[bool, typer.Option("--read", help="Record a read instead of a write")] = False,
) -> None:
    """Record a file touch in the current session."""
    handle = _repo_key()
    full = path.resolve()
    try:
        rel_path = str(full.relative_to(handle))
    except ValueError:
        rel_path = str(full)
    with open_engine(ctx) as engine:
        engine.record_file_touch(handle, rel_path, "read" if read else "write")


@app.command()
def status(
    ctx: typer.Context,
    watch: Annotated[bool, typer.Option("--watch", "-w", help="Live session timer")] = False,
) -> None:
    """Show the current session, or the last one for this repo."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        view = engine.get_active_session(handle)
        if view is None:
            last = engine.get_last_session(handle)
            if last is None:
                console.print("No sessions found for this repo.")
                return
            console.print("No active session. Last session:")
            print_session_summary(last)
            return
        if watch:
            _watch(engine, handle)
            return
        print_session_summary(view)


@app.command()
def watch(ctx: typer.Context) -> None:
    """Show a live timer for the current session until it ends."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        if engine.get_active_session(handle) is None:
            _fail("No active session. Run `vf start` first.")
        _watch(engine, handle)


def _watch(engine: SessionEngine, handle: str) -> None:
    def render(view: SessionView) -> Panel:
        summary = view.flow_summary
        body = f"[bold]{format_clock(summary.session_duration_ms)}[/bold]  {FLOW_LABELS[summary.label]}"
        if view.paused:
            body += "  [yellow]paused[/yellow]"
        return Panel(body, title=f"VibeFlow · {view.repo_name}", subtitle="Ctrl+C to stop")

    view = engine.get_active_session(handle)
    try:
        with Live(render(view), console=console, refresh_per_second=2) as live:
            while True:
                time.sleep(1)
                engine.tick()
                view = engine.get_active_session(handle)
                if view is None:
                    break
                live.update(render(view))
    except KeyboardInterrupt:
        pass
    if view is None:
        console.print("[dim]Session ended.[/dim]")


@app.command()
def resume(
    ctx: typer.Context,
    path: Annotated[Optional[Path], typer.Argument(help="Repository path (default: current)")] = None,
) -> None:
    """Show where you left off: last session, parked thoughts and echoes."""
    handle = _repo_key(path)
    with open_engine(ctx) as engine:
        view = engine.get_active_session(handle)
        if view is not None:
            console.print("Active session:")
        else:
            view = engine.get_last_session(handle)
            if view is None:
                console.print("No sessions found for this repo.")
                return
            console.print("Last session:")
        print_session_summary(view)

        thoughts = engine.get_parked_thoughts(handle)
        if thoughts:
            console.print("\n[bold]Parked thoughts:[/bold]")
            for thought in thoughts:
                console.print(f"  [cyan]{thought.id}[/cyan] {thought.text}")

        delivered = engine.get_delivered_time_echoes(handle)
        if delivered:
            console.print()
            print_echoes(delivered, "Time echoes waiting for you")

        trace = engine.read_trace(handle)
        if trace:
            console.print(
                f"\n[dim]Trace found · {trace.get('intent') or 'no intent'} · "
                f"{len(trace.get('parked_thoughts') or [])} notes[/dim]"
            )


@app.command()
def history(
    ctx: typer.Context,
    path: Annotated[Optional[Path], typer.Argument(help="Repository path (default: current)")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of sessions")] = 5,
) -> None:
    """List recent sessions for this repo."""
    handle = _repo_key(path)
    with open_engine(ctx) as engine:
        sessions = engine.get_all_sessions(handle, limit=limit)
        if not sessions:
            console.print("No sessions found for this repo.")
            return

        table = Table(title=f"Recent sessions ({len(sessions)})")
        table.add_column("ID", style="cyan")
        table.add_column("Started")
        table.add_column("Duration")
        table.add_column("Flow")
        table.add_column("Intent")
        for view in sessions:
            summary = view.flow_summary
            table.add_row(
                view.id,
                _fmt_time(view.started_at),
                format_duration(summary.session_duration_ms) if summary else "-",
                FLOW_LABELS[summary.label] if summary else "-",
                view.intent.text if view.intent else "[dim]No intent[/dim]",
            )
        console.print(table)


@app.command()
def receipt(
    ctx: typer.Context,
    session_id: Annotated[Optional[str], typer.Argument(help="Session ID (default: last session)")] = None,
) -> None:
    """Print a session receipt."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        if session_id:
            view = engine.get_session(session_id)
            if view is None:
                _fail(f"Session not found: {session_id}")
        else:
            view = engine.get_active_session(handle) or engine.get_last_session(handle)
            if view is None:
                _fail("No session found to print a receipt.")
        for line in build_receipt(view):
            console.print(line, highlight=False)


@app.command()
def delete(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID to delete")],
) -> None:
    """Delete one session from history."""
    with open_engine(ctx) as engine:
        if engine.delete_session(session_id):
            console.print(f"[green]Deleted session:[/green] {session_id}")
        else:
            _fail(f"Session not found: {session_id}")


@app.command()
def forget(
    ctx: typer.Context,
    path: Annotated[Optional[Path], typer.Argument(help="Repository path (default: current)")] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete all sessions, thoughts and echoes for a repo."""
    handle = _repo_key(path)
    if not yes:
        typer.confirm(f"Delete all VibeFlow context for {handle}?", abort=True)
    with open_engine(ctx) as engine:
        removed = engine.delete_repo_context(handle)
        console.print(f"[green]Forgot {handle}[/green] ({removed} sessions removed)")


# ── Thoughts commands ────────────────────────────────────────────


@thoughts_app.command("list")
def thoughts_list(ctx: typer.Context) -> None:
    """List parked thoughts for this repo."""
    with open_engine(ctx) as engine:
        thoughts = engine.get_parked_thoughts(_repo_key())
        if not thoughts:
            console.print("[dim]No parked thoughts. Park one with:[/dim]")
            console.print('  vf park "remember to ..."')
            return

        table = Table(title="Parked thoughts")
        table.add_column("ID", style="cyan")
        table.add_column("Parked", style="dim")
        table.add_column("Thought")
        for thought in thoughts:
            table.add_row(thought.id, _fmt_time(thought.created_at), thought.text)
        console.print(table)


@thoughts_app.command("delete")
def thoughts_delete(
    ctx: typer.Context,
    thought_id: Annotated[str, typer.Argument(help="Thought ID to delete")],
) -> None:
    """Delete a parked thought everywhere it appears."""
    with open_engine(ctx) as engine:
        if engine.delete_parked_thought(_repo_key(), thought_id):
            console.print(f"[green]Deleted thought:[/green] {thought_id}")
        else:
            _fail(f"Thought not found: {thought_id}")


# ── Echo commands ────────────────────────────────────────────────


@echoes_app.command("list")
def echoes_list(ctx: typer.Context) -> None:
    """List delivered time echoes waiting for a decision."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        delivered = engine.get_delivered_time_echoes(handle)
        pending = engine.mailbox.pending(handle)
        if delivered:
            print_echoes(delivered, "Delivered time echoes")
        else:
            console.print("[dim]No delivered time echoes.[/dim]")
        if pending:
            console.print(f"[dim]{len(pending)} echoes waiting for the next session.[/dim]")


@echoes_app.command("park")
def echoes_park(
    ctx: typer.Context,
    echo_id: Annotated[str, typer.Argument(help="Echo ID to keep as a parked thought")],
) -> None:
    """Keep a delivered echo as a parked thought."""
    with open_engine(ctx) as engine:
        thought = engine.park_time_echo(_repo_key(), echo_id)
        if thought is None:
            _fail(f"Time echo not found: {echo_id}")
        console.print(f"[green]Parked as thought:[/green] {thought.id}")


@echoes_app.command("discard")
def echoes_discard(
    ctx: typer.Context,
    echo_id: Annotated[str, typer.Argument(help="Echo ID to discard")],
) -> None:
    """Discard a delivered echo."""
    with open_engine(ctx) as engine:
        if engine.discard_time_echo(_repo_key(), echo_id):
            console.print(f"[green]Discarded echo:[/green] {echo_id}")
        else:
            _fail(f"Time echo not found: {echo_id}")


# ── Trace commands ───────────────────────────────────────────────


@trace_app.command("on")
def trace_on(ctx: typer.Context) -> None:
    """Write .vibeflow/trace.json on session end and commit it with the repo."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        engine.set_include_trace(handle, True)
        console.print(f"[green]Trace enabled[/green] for {handle}")


@trace_app.command("off")
def trace_off(ctx: typer.Context) -> None:
    """Stop writing the trace and ignore .vibeflow/ in git."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        engine.set_include_trace(handle, False)
        console.print(f"[yellow]Trace disabled[/yellow] for {handle}")


@trace_app.command("show")
def trace_show(ctx: typer.Context) -> None:
    """Show the trace stored in this repo."""
    handle = _repo_key()
    with open_engine(ctx) as engine:
        include = engine.get_include_trace(handle)
        console.print(f"Include trace: {'[green]on[/green]' if include else '[dim]off[/dim]'}")
        trace = engine.read_trace(handle)
        if trace is None:
            console.print("[dim]No trace found.[/dim]")
            return
        console.print_json(data=trace)


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from vibeflow.mcp.server import serve

    serve()

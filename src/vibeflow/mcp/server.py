"""MCP server exposing session tracking to AI coding agents.

Runs as a long-lived process with its own supervisor: sessions auto-end
after the app idle timeout (10 minutes unless ``VF_IDLE_TIMEOUT`` says
otherwise) and are force-ended when the server shuts down. The server keeps
its data in ``<data_dir>/mcp`` so it never races the CLI for the same files.
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from vibeflow.config import EngineConfig, VibeFlowSettings
from vibeflow.context.engine import SessionEngine
from vibeflow.context.models import SessionView, TimeEcho
from vibeflow.context.store import SessionStore
from vibeflow.log import setup_logging
from vibeflow.repo import resolve_repo_key

mcp = FastMCP("vibeflow")
engine: SessionEngine | None = None


def get_engine() -> SessionEngine:
    global engine
    if engine is None:
        settings = VibeFlowSettings()
        store = SessionStore(settings.resolve_data_dir() / "mcp")
        engine = SessionEngine(store, EngineConfig.for_app(settings.idle_timeout))
    return engine


def _ensure_session(project_path: str) -> str:
    handle = resolve_repo_key(project_path)
    get_engine().start_session(handle, "mcp", cwd=project_path)
    return handle


def _view_dict(view: SessionView) -> dict:
    summary = view.flow_summary
    return {
        "id": view.id,
        "repo": view.repo_key,
        "active": view.is_active,
        "started_at": view.started_at.isoformat(),
        "ended_at": view.ended_at.isoformat() if view.ended_at else None,
        "intent": view.intent.text if view.intent else None,
        "parked_thoughts": len(view.parked_thoughts),
        "flow": summary.model_dump() if summary else None,
        "paused": view.paused,
    }


def _echo_dict(echo: TimeEcho) -> dict:
    return {"id": echo.id, "text": echo.text, "created_at": echo.created_at.isoformat()}


@mcp.tool()
def start_session(project_path: str, intent: str | None = None) -> dict:
    """Start (or continue) a work session on a project.

    Call this when you begin working in a repository. Any time echoes left by
    the previous session on the same repository are returned once, here.

    Args:
        project_path: Absolute path to the project being worked on
        intent: Optional - what this session intends to accomplish
    """
    handle = _ensure_session(project_path)
    eng = get_engine()
    if intent:
        eng.set_intent(handle, intent)
    echoes = eng.drain_time_echoes(handle)
    view = eng.get_active_session(handle)
    return {**_view_dict(view), "time_echoes": [_echo_dict(e) for e in echoes]}


@mcp.tool()
def end_session(project_path: str) -> dict | str:
    """End the active session on a project and return its flow summary.

    Args:
        project_path: Absolute path to the project
    """
    handle = resolve_repo_key(project_path)
    eng = get_engine()
    session = eng.end_session(handle, "mcp-end")
    if session is None:
        return f"No active session for {handle}"
    return _view_dict(eng.get_session(session.id))


@mcp.tool()
def set_intent(project_path: str, text: str) -> dict:
    """Record what you are trying to do right now.

    Args:
        project_path: Absolute path to the project
        text: The intent, e.g. "Fix flaky login test"
    """
    handle = _ensure_session(project_path)
    intent = get_engine().set_intent(handle, text)
    return {"status": "saved", "intent": intent.text}


@mcp.tool()
def park_thought(project_path: str, text: str) -> dict:
    """Park a thought so it stays visible to every later session on the repo.

    Use this for side quests you noticed but should not chase now.

    Args:
        project_path: Absolute path to the project
        text: The thought to park
    """
    handle = _ensure_session(project_path)
    thought = get_engine().add_parked_thought(handle, text)
    return {"id": thought.id, "status": "parked"}


@mcp.tool()
def leave_time_echo(project_path: str, text: str) -> dict:
    """Leave a note for whichever session next opens on this repository.

    The echo is delivered once, when the next session starts.

    Args:
        project_path: Absolute path to the project
        text: The note for the future session
    """
    handle = _ensure_session(project_path)
    echo = get_engine().queue_time_echo(handle, text)
    return {"id": echo.id, "status": "queued"}


@mcp.tool()
def session_status(project_path: str) -> dict | str:
    """Get the active (or last) session on a project with its flow summary.

    Args:
        project_path: Absolute path to the project
    """
    handle = resolve_repo_key(project_path)
    eng = get_engine()
    view = eng.get_active_session(handle) or eng.get_last_session(handle)
    if view is None:
        return f"No sessions found for {handle}"
    return _view_dict(view)


@mcp.tool()
def list_parked_thoughts(project_path: str) -> list[dict]:
    """List parked thoughts for a project, oldest first.

    Args:
        project_path: Absolute path to the project
    """
    thoughts = get_engine().get_parked_thoughts(resolve_repo_key(project_path))
    return [{"id": t.id, "text": t.text, "created_at": t.created_at.isoformat()} for t in thoughts]


@mcp.tool()
def consume_time_echoes(project_path: str) -> list[dict]:
    """Return time echoes waiting for this project and mark them delivered.

    Args:
        project_path: Absolute path to the project
    """
    echoes = get_engine().drain_time_echoes(resolve_repo_key(project_path))
    return [_echo_dict(e) for e in echoes]


def serve() -> None:
    """Run over stdio; every open session is ended on the way out."""
    setup_logging(VibeFlowSettings().log_level)
    eng = get_engine()
    try:
        mcp.run()
    finally:
        eng.shutdown("shutdown")

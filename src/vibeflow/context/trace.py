"""Per-repo trace artifact: ``<repo_root>/.vibeflow/trace.json``.

When a repo opts in, each ended session's summary is mirrored into the
repository so it can travel with the code. Opting in also removes the trace
directory from ``.gitignore``; opting out puts it back.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from vibeflow.config import TRACE_DIRNAME, TRACE_FILENAME
from vibeflow.context.models import Session
from vibeflow.repo import find_repo_root

IGNORE_ENTRY = f"{TRACE_DIRNAME}/"


def trace_path(repo_root: Path) -> Path:
    return repo_root / TRACE_DIRNAME / TRACE_FILENAME


def build_trace(session: Session) -> dict:
    """The JSON document written for an ended session."""
    return {
        "session_id": session.id,
        "repo": session.repo_name,
        "cwd": session.cwd,
        "started_at": session.started_at.isoformat(),
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
        "end_reason": session.end_reason,
        "intent": session.intent.text if session.intent else None,
        "intents": [i.model_dump(mode="json") for i in session.intents],
        "parked_thoughts": [t.model_dump(mode="json") for t in session.parked_thoughts],
        "flow_summary": session.flow_summary.model_dump(mode="json") if session.flow_summary else None,
    }


def write_trace(repo_key: str, session: Session) -> Path | None:
    """Write the trace for *session* into its repository.

    Only real repositories get a trace; a plain directory key is skipped.
    """
    root = find_repo_root(repo_key)
    if root is None:
        logger.debug("No repository at {}, skipping trace", repo_key)
        return None
    path = trace_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(build_trace(session), indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote trace for session {} to {}", session.id, path)
    return path


def read_trace(repo_key: str) -> dict | None:
    root = find_repo_root(repo_key)
    if root is None:
        return None
    path = trace_path(root)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Unreadable trace at {}: {}", path, exc)
        return None
    return data if isinstance(data, dict) else None


def set_trace_ignored(repo_key: str, ignored: bool) -> bool:
    """Add or remove the trace directory from the repo's ``.gitignore``.

    Returns True if the file changed.
    """
    root = find_repo_root(repo_key)
    if root is None:
        return False
    gitignore = root / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
    present = any(line.strip() in (IGNORE_ENTRY, TRACE_DIRNAME) for line in lines)

    if ignored and not present:
        lines.append(IGNORE_ENTRY)
    elif not ignored and present:
        lines = [line for line in lines if line.strip() not in (IGNORE_ENTRY, TRACE_DIRNAME)]
    else:
        return False

    gitignore.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    logger.debug("{} {} in {}", "Ignored" if ignored else "Unignored", IGNORE_ENTRY, gitignore)
    return True

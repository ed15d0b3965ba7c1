"""JSON-file storage for sessions and repo-scoped state.

Layout under the data directory::

    sessions.json   list of Session records
    state.json      {"repos": {repo_key: RepoContext}, "active": {handle: ActiveSession}}

Writes are atomic (temp file + rename) and debounced; state transitions that
must survive a crash call ``flush()`` directly. A file that fails to parse
is moved aside to ``<name>.<epoch-ms>.bak`` and the store starts empty; a
session record that fails validation is skipped and the rest are kept.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from vibeflow.config import (
    SAVE_DEBOUNCE_SECONDS,
    SESSIONS_FILENAME,
    STATE_FILENAME,
    VIBEFLOW_DIR,
    ensure_dirs,
)
from vibeflow.context.models import ActiveSession, RepoContext, Session
from vibeflow.context.scheduler import DebouncedWriter, Scheduler, ThreadingScheduler

_SESSION_LIST = TypeAdapter(list[Session])


class StoredState(BaseModel):
    repos: dict[str, RepoContext] = Field(default_factory=dict)
    active: dict[str, ActiveSession] = Field(default_factory=dict)


class SessionStore:
    """In-memory session state mirrored to JSON files.

    ``lock`` serialises every mutation, including debounced flushes that
    fire on a timer thread; the engine takes the same lock.
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        scheduler: Scheduler | None = None,
        debounce_seconds: float = SAVE_DEBOUNCE_SECONDS,
    ):
        self.data_dir = Path(data_dir) if data_dir else VIBEFLOW_DIR
        self.sessions_path = self.data_dir / SESSIONS_FILENAME
        self.state_path = self.data_dir / STATE_FILENAME
        self.lock = threading.RLock()
        self._writer = DebouncedWriter(scheduler or ThreadingScheduler(), debounce_seconds, self._write)
        self._dirty = False

        self.sessions: list[Session] = []
        self.repos: dict[str, RepoContext] = {}
        self.active: dict[str, ActiveSession] = {}
        self.load()

    # -- Load / save -----------------------------------------------------------

    def load(self) -> None:
        with self.lock:
            self.sessions = self._load_sessions()

            raw_state = self._read_json(self.state_path)
            try:
                state = StoredState.model_validate(raw_state or {})
            except ValidationError as exc:
                logger.warning("Invalid state data in {}: {}", self.state_path, exc.error_count())
                self._backup(self.state_path)
                state = StoredState()
            self.repos = state.repos
            self.active = state.active
            logger.debug(
                "Loaded {} sessions, {} repos, {} active handles from {}",
                len(self.sessions),
                len(self.repos),
                len(self.active),
                self.data_dir,
            )

    def _load_sessions(self) -> list[Session]:
        """Validate records one by one, keeping every session that parses.

        If any record is dropped the original file is backed up and the
        surviving sessions are scheduled to be written back.
        """
        raw = self._read_json(self.sessions_path)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Expected a list of sessions in {}", self.sessions_path)
            self._backup(self.sessions_path)
            return []

        sessions: list[Session] = []
        dropped = 0
        for index, record in enumerate(raw):
            try:
                sessions.append(Session.model_validate(record))
            except ValidationError as exc:
                dropped += 1
                logger.warning(
                    "Skipping invalid session #{} in {}: {} errors", index, self.sessions_path, exc.error_count()
                )
        if dropped:
            self._backup(self.sessions_path)
            self.save_soon()
        return sessions

    def save_soon(self) -> None:
        """Schedule a debounced write."""
        with self.lock:
            self._dirty = True
            self._writer.schedule()

    def flush(self) -> None:
        """Write everything now, cancelling any pending debounced write."""
        with self.lock:
            self._writer.flush_now()

    def _write(self) -> None:
        with self.lock:
            ensure_dirs(self.data_dir)
            sessions = _SESSION_LIST.dump_json(self.sessions, indent=2).decode("utf-8")
            state = StoredState(repos=self.repos, active=self.active).model_dump_json(indent=2)
            _atomic_write(self.sessions_path, sessions)
            _atomic_write(self.state_path, state)
            self._dirty = False
            logger.debug("Flushed {} sessions to {}", len(self.sessions), self.data_dir)

    def close(self) -> None:
        """Flush pending changes, if any."""
        with self.lock:
            if self._dirty:
                self.flush()
            self._writer.cancel()

    @property
    def dirty(self) -> bool:
        return self._dirty

    # -- Sessions --------------------------------------------------------------

    def write_session(self, session: Session) -> Session:
        """Add a session record (no-op if already stored) and schedule a save."""
        with self.lock:
            if self.get_session(session.id) is None:
                self.sessions.append(session)
            self.save_soon()
            return session

    def get_session(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def list_sessions(self, repo_key: str | None = None, limit: int | None = None) -> list[Session]:
        """List sessions newest first, optionally filtered by repo."""
        sessions = [s for s in self.sessions if repo_key is None or s.repo_key == repo_key]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return sessions[:limit] if limit is not None else sessions

    def delete_session(self, session_id: str) -> bool:
        with self.lock:
            before = len(self.sessions)
            self.sessions = [s for s in self.sessions if s.id != session_id]
            return len(self.sessions) < before

    # -- Repo contexts ---------------------------------------------------------

    def repo(self, repo_key: str) -> RepoContext:
        """Return the context for *repo_key*, creating it on first reference."""
        with self.lock:
            context = self.repos.get(repo_key)
            if context is None:
                context = self.repos[repo_key] = RepoContext()
            return context

    def peek_repo(self, repo_key: str) -> RepoContext | None:
        return self.repos.get(repo_key)

    def drop_repo(self, repo_key: str) -> bool:
        with self.lock:
            return self.repos.pop(repo_key, None) is not None

    # -- Helpers ---------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Could not parse {}, starting empty", path)
            self._backup(path)
            return None

    def _backup(self, path: Path) -> Path | None:
        backup = path.with_name(f"{path.name}.{int(time.time() * 1000)}.bak")
        try:
            os.replace(path, backup)
        except OSError as exc:
            logger.warning("Could not back up {}: {}", path, exc)
            return None
        logger.warning("Moved unreadable {} to {}", path.name, backup)
        return backup


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise

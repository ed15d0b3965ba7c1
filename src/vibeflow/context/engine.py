"""Session lifecycle and idle-timeout supervision.

``SessionEngine`` owns the registry of active handles. Every operation, the
periodic supervisor tick and debounced flushes are serialised through the
store's lock, so a tick can never observe a session half-way through an end
or a delete.

Per handle the lifecycle is ``no-session -> active -> ended``; a new session
under the same handle is a new record.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Literal

from loguru import logger

from vibeflow.config import EngineConfig
from vibeflow.context import ledger
from vibeflow.context.flow import compute_flow_summary
from vibeflow.context.mailbox import TimeEchoMailbox
from vibeflow.context.models import (
    ActiveSession,
    FileTouch,
    IdleGap,
    Intent,
    ParkedThought,
    RecentSession,
    Session,
    SessionView,
    TimeEcho,
    duration_ms,
    truncate_ms,
    utcnow,
)
from vibeflow.context.scheduler import Scheduler, ThreadingScheduler, TimerHandle
from vibeflow.context.store import SessionStore
from vibeflow.context.thoughts import ParkedThoughtStore
from vibeflow.context.trace import read_trace, set_trace_ignored, write_trace
from vibeflow.errors import NoActiveSessionError
from vibeflow.repo import resolve_repo_key

Clock = Callable[[], datetime]


class SessionEngine:
    """Tracks sessions per handle and classifies their flow.

    Args:
        store: Persistence for sessions and repo contexts.
        config: Thresholds and surface behaviour (see ``EngineConfig``).
        clock: Returns the current aware UTC time.
        scheduler: Timer source for the supervisor tick.
    """

    def __init__(
        self,
        store: SessionStore,
        config: EngineConfig | None = None,
        clock: Clock = utcnow,
        scheduler: Scheduler | None = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self._clock = clock
        self._scheduler = scheduler or ThreadingScheduler()
        self._lock = store.lock
        self._ticker: TimerHandle | None = None

        self.thoughts = ParkedThoughtStore(store)
        self.mailbox = TimeEchoMailbox(store, self.thoughts)

        with self._lock:
            if not self.config.resume_active:
                store.active.clear()
            self._active: dict[str, ActiveSession] = store.active
            self._restore()

    def _now(self) -> datetime:
        return truncate_ms(self._clock())

    # -- Registry --------------------------------------------------------------

    @property
    def active_handles(self) -> list[str]:
        return list(self._active)

    @property
    def supervising(self) -> bool:
        return self._ticker is not None

    def _restore(self) -> None:
        """Drop stale registry entries and end sessions nobody owns."""
        for handle, tracker in list(self._active.items()):
            session = self.store.get_session(tracker.session_id)
            if session is None or not session.is_active:
                del self._active[handle]

        owned = {tracker.session_id for tracker in self._active.values()}
        recovered = 0
        for session in self.store.sessions:
            if session.is_active and session.id not in owned:
                ended_at = max(session.activity, default=session.started_at)
                self._finalize(session, None, ended_at, "recovered")
                recovered += 1
        if recovered:
            logger.warning("Recovered {} sessions left open by a previous process", recovered)
            self.store.flush()

        if self._active:
            logger.debug("Resumed {} active handles", len(self._active))
            self._arm()

    def _tracked(self, handle: str) -> tuple[ActiveSession, Session] | None:
        tracker = self._active.get(handle)
        if tracker is None:
            return None
        session = self.store.get_session(tracker.session_id)
        if session is None:
            return None
        return tracker, session

    def _require(self, handle: str, reason: str) -> tuple[ActiveSession, Session]:
        tracked = self._tracked(handle)
        if tracked is None and self.config.auto_start:
            self.start_session(handle, reason)
            tracked = self._tracked(handle)
        if tracked is None:
            raise NoActiveSessionError(handle)
        return tracked

    # -- Supervisor ------------------------------------------------------------

    def _arm(self) -> None:
        if self._ticker is None:
            interval = self.config.tick_interval.total_seconds()
            self._ticker = self._scheduler.call_every(interval, self._on_tick)
            logger.debug("Supervisor armed (every {}s)", interval)

    def _disarm(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
            logger.debug("Supervisor disarmed")

    def _on_tick(self) -> None:
        self.tick()

    def tick(self, now: datetime | None = None) -> list[Session]:
        """Open idle gaps and auto-end sessions idle past the threshold.

        Returns the sessions ended by this sweep.
        """
        with self._lock:
            now = truncate_ms(now) if now else self._now()
            opened = False
            expired: list[str] = []
            for handle, tracker in self._active.items():
                idle_for = now - tracker.last_activity_at
                if idle_for >= self.config.idle_threshold:
                    opened = ledger.open_idle_gap(tracker) or opened
                auto_end = self.config.auto_end_after
                if auto_end is not None and idle_for >= auto_end:
                    expired.append(handle)

            ended = []
            for handle in expired:
                logger.info("Auto-ending session for {} after inactivity", handle)
                session = self._end(handle, "inactivity", now)
                if session is not None:
                    ended.append(session)

            if ended:
                self.store.flush()
            elif opened:
                self.store.save_soon()
            return ended

    # -- Lifecycle -------------------------------------------------------------

    def start_session(self, handle: str, reason: str = "start", cwd: str | Path | None = None) -> Session:
        """Start a session for *handle*; returns the active one if it exists."""
        with self._lock:
            tracked = self._tracked(handle)
            if tracked is not None:
                return tracked[1]

            now = self._now()
            workdir = str(Path(cwd or os.getcwd()).expanduser().resolve())
            session = Session(
                handle=handle,
                repo_key=resolve_repo_key(workdir),
                cwd=workdir,
                started_at=now,
                activity=[now],
            )
            self.store.write_session(session)
            self._active[handle] = ActiveSession(
                handle=handle,
                session_id=session.id,
                last_activity_at=now,
                last_sample_at=now,
            )
            self._arm()
            logger.info("Session {} started for {} ({}) in {}", session.id, handle, reason, session.repo_key)
            return session

    def end_session(self, handle: str, reason: str = "end") -> Session | None:
        """End the active session for *handle*.

        Returns None if the handle has no active session, e.g. when an
        explicit end races an auto-end.
        """
        with self._lock:
            session = self._end(handle, reason, self._now())
            if session is not None:
                self.store.flush()
            return session

    def _end(self, handle: str, reason: str, now: datetime) -> Session | None:
        tracked = self._tracked(handle)
        self._active.pop(handle, None)
        if not self._active:
            self._disarm()
        if tracked is None:
            return None

        tracker, session = tracked
        self._finalize(session, tracker, now, reason)
        logger.info(
            "Session {} ended ({}): {}",
            session.id,
            reason,
            session.flow_summary.label if session.flow_summary else "unclassified",
        )
        return session

    def _finalize(self, session: Session, tracker: ActiveSession | None, ended_at: datetime, reason: str) -> None:
        if tracker is not None:
            ledger.close_idle_gap(tracker, session, ended_at)
        ended_at = max(ended_at, session.started_at)
        session.ended_at = ended_at
        session.end_reason = reason
        session.flow_summary = compute_flow_summary(session, ended_at)

        echoes, session.time_echoes = session.time_echoes, []
        self.mailbox.enqueue(session.repo_key, echoes, ended_at)

        context = self.store.peek_repo(session.repo_key)
        if context is not None and context.include_trace:
            try:
                write_trace(session.repo_key, session)
            except OSError as exc:
                logger.warning("Could not write trace for {}: {}", session.repo_key, exc)

    def shutdown(self, reason: str = "shutdown") -> list[Session]:
        """End every active session and flush before the process exits."""
        with self._lock:
            now = self._now()
            ended = [s for s in (self._end(h, reason, now) for h in list(self._active)) if s is not None]
            self._disarm()
            self.store.flush()
            if ended:
                logger.info("Shutdown ended {} sessions", len(ended))
            return ended

    def close(self) -> None:
        """Stop timers and flush, leaving active sessions registered."""
        with self._lock:
            self._disarm()
            self.store.close()

    # -- Events ----------------------------------------------------------------

    def record_activity(self, handle: str, source: str = "activity") -> None:
        with self._lock:
            tracker, session = self._require(handle, f"activity:{source}")
            ledger.record_activity(
                tracker, session, source, self._now(), self.config.activity_sample_interval
            )
            self.store.save_soon()

    def set_intent(self, handle: str, text: str) -> Intent:
        text = text.strip()
        if not text:
            raise ValueError("Intent text is required")
        with self._lock:
            tracker, session = self._require(handle, "intent")
            intent = Intent(text=text, set_at=self._now())
            session.intent = intent
            session.intents.append(intent)
            self.record_activity(handle, "intent")
            logger.info("Intent set for session {}", session.id)
            return intent

    def add_parked_thought(self, handle: str, text: str) -> ParkedThought:
        if not text.strip():
            raise ValueError("Parked thought text is required")
        with self._lock:
            _, session = self._require(handle, "parked-thought")
            thought = self.thoughts.add(session, text, self._now())
            self.record_activity(handle, "parked-thought")
            return thought

    def queue_time_echo(self, handle: str, text: str) -> TimeEcho:
        """Leave a note for the next session on this handle's repository."""
        text = text.strip()
        if not text:
            raise ValueError("Time echo text is required")
        with self._lock:
            _, session = self._require(handle, "time-echo")
            echo = TimeEcho(text=text, created_at=self._now(), source_session_id=session.id)
            session.time_echoes.append(echo)
            self.record_activity(handle, "time-echo")
            logger.info("Time echo {} left in session {}", echo.id, session.id)
            return echo

    def record_file_touch(self, handle: str, rel_path: str, kind: Literal["read", "write"] = "write") -> FileTouch:
        with self._lock:
            _, session = self._require(handle, "file-touch")
            now = self._now()
            touch = session.file_touches.setdefault(rel_path, FileTouch(last_touched=now))
            if kind == "read":
                touch.reads += 1
            else:
                touch.writes += 1
            touch.last_touched = now
            self.record_activity(handle, f"file-{kind}")
            return touch

    # -- Reads -----------------------------------------------------------------

    def _view(self, session: Session, now: datetime) -> SessionView:
        tracker = None
        if session.is_active:
            tracker = next((t for t in self._active.values() if t.session_id == session.id), None)

        if not session.is_active:
            summary = session.flow_summary or compute_flow_summary(session, session.ended_at)
            return SessionView.model_validate({**session.model_dump(), "flow_summary": summary})

        live = session
        idle_for_ms = None
        paused = False
        if tracker is not None:
            idle_for_ms = max(0, duration_ms(tracker.last_activity_at, now))
            paused = idle_for_ms >= self.config.idle_threshold.total_seconds() * 1000
            if tracker.is_idle and now > tracker.idle_started_at:
                provisional = IdleGap(start_at=tracker.idle_started_at, end_at=now)
                live = session.model_copy(update={"idle_gaps": [*session.idle_gaps, provisional]})
        summary = compute_flow_summary(live, now)
        return SessionView.model_validate(
            {**session.model_dump(), "flow_summary": summary, "idle_for_ms": idle_for_ms, "paused": paused}
        )

    def get_active_session(self, handle: str) -> SessionView | None:
        with self._lock:
            tracked = self._tracked(handle)
            if tracked is None:
                return None
            return self._view(tracked[1], self._now())

    def get_session(self, session_id: str) -> SessionView | None:
        with self._lock:
            session = self.store.get_session(session_id)
            return self._view(session, self._now()) if session else None

    def get_last_session(self, repo_key: str | None = None) -> SessionView | None:
        """The most recently started ended session, optionally for one repo."""
        with self._lock:
            for session in self.store.list_sessions(repo_key):
                if not session.is_active:
                    return self._view(session, self._now())
            return None

    def get_all_sessions(self, repo_key: str | None = None, limit: int | None = None) -> list[SessionView]:
        with self._lock:
            now = self._now()
            return [self._view(s, now) for s in self.store.list_sessions(repo_key, limit)]

    def get_recent_sessions(self, limit: int = 3) -> list[RecentSession]:
        """Latest ended session per repository, newest first."""
        with self._lock:
            ended = sorted(
                (s for s in self.store.sessions if not s.is_active),
                key=lambda s: s.ended_at,
                reverse=True,
            )
            recent: list[RecentSession] = []
            seen: set[str] = set()
            for session in ended:
                if session.repo_key in seen:
                    continue
                seen.add(session.repo_key)
                recent.append(
                    RecentSession(
                        id=session.id,
                        repo_key=session.repo_key,
                        cwd=session.cwd,
                        ended_at=session.ended_at,
                        intent=session.intent,
                    )
                )
                if len(recent) >= limit:
                    break
            return recent

    # -- Deletion --------------------------------------------------------------

    def _unregister_where(self, predicate: Callable[[ActiveSession], bool]) -> None:
        for handle, tracker in list(self._active.items()):
            if predicate(tracker):
                del self._active[handle]
        if not self._active:
            self._disarm()

    def delete_session(self, session_id: str) -> bool:
        """Delete one session record. Repo-scoped thoughts and echoes remain."""
        with self._lock:
            self._unregister_where(lambda t: t.session_id == session_id)
            if not self.store.delete_session(session_id):
                return False
            self.store.flush()
            logger.info("Deleted session {}", session_id)
            return True

    def delete_repo_context(self, repo_key: str) -> int:
        """Delete every session and all repo-scoped state for *repo_key*.

        Returns the number of sessions removed.
        """
        with self._lock:
            doomed = {s.id for s in self.store.sessions if s.repo_key == repo_key}
            self._unregister_where(lambda t: t.session_id in doomed)
            for session_id in doomed:
                self.store.delete_session(session_id)
            dropped = self.store.drop_repo(repo_key)
            if doomed or dropped:
                self.store.flush()
                logger.info("Deleted {} sessions and context for {}", len(doomed), repo_key)
            return len(doomed)

    # -- Repo-scoped notes -----------------------------------------------------

    def drain_time_echoes(self, repo_key: str) -> list[TimeEcho]:
        return self.mailbox.drain(repo_key, self._now())

    def get_delivered_time_echoes(self, repo_key: str) -> list[TimeEcho]:
        return self.mailbox.delivered(repo_key)

    def park_time_echo(self, repo_key: str, echo_id: str) -> ParkedThought | None:
        return self.mailbox.park(repo_key, echo_id, self._now())

    def discard_time_echo(self, repo_key: str, echo_id: str) -> bool:
        return self.mailbox.discard(repo_key, echo_id)

    def get_parked_thoughts(self, repo_key: str) -> list[ParkedThought]:
        return self.thoughts.list(repo_key)

    def delete_parked_thought(self, repo_key: str, thought_id: str) -> bool:
        return self.thoughts.delete(repo_key, thought_id)

    # -- Trace -----------------------------------------------------------------

    def get_include_trace(self, repo_key: str) -> bool:
        context = self.store.peek_repo(repo_key)
        return bool(context and context.include_trace)

    def set_include_trace(self, repo_key: str, include: bool) -> bool:
        with self._lock:
            self.store.repo(repo_key).include_trace = include
            try:
                set_trace_ignored(repo_key, ignored=not include)
            except OSError as exc:
                logger.warning("Could not update .gitignore for {}: {}", repo_key, exc)
            self.store.flush()
            return include

    def read_trace(self, repo_key: str) -> dict | None:
        return read_trace(repo_key)

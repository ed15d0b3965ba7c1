"""Session data models for flow tracking and cross-session notes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Literal
from uuid import NAMESPACE_URL, uuid4, uuid5

from pydantic import BaseModel, Field, model_validator

FlowLabel = Literal["deep-flow", "drift", "context-loss", "steady"]

_ONE_MS = timedelta(milliseconds=1)


def utcnow() -> datetime:
    return truncate_ms(datetime.now(timezone.utc))


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision so durations in ms add up exactly."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def new_id() -> str:
    return uuid4().hex[:12]


def duration_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return (end - start) // _ONE_MS


class IdleGap(BaseModel):
    """A closed interval of inactivity within a session."""

    start_at: datetime
    end_at: datetime
    duration_ms: int = 0

    @model_validator(mode="after")
    def _check_interval(self) -> IdleGap:
        if self.end_at <= self.start_at:
            raise ValueError("idle gap must end after it starts")
        if not self.duration_ms:
            self.duration_ms = duration_ms(self.start_at, self.end_at)
        return self


class Intent(BaseModel):
    text: str
    set_at: datetime = Field(default_factory=utcnow)


class ParkedThought(BaseModel):
    """A note parked at repository scope.

    The same id is shared by the copy embedded in the originating session
    and the copy in the repo context.
    """

    id: str = Field(default_factory=new_id)
    text: str
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _legacy_id(cls, data: Any) -> Any:
        # Older records carry no id; derive one from the content so the
        # session copy and the repo copy agree.
        if isinstance(data, dict) and not data.get("id") and "text" in data:
            seed = f"{data.get('created_at', '')}|{data['text']}"
            data = {**data, "id": "legacy-" + uuid5(NAMESPACE_URL, seed).hex[:12]}
        return data


class TimeEcho(BaseModel):
    """A note left for the next session on the same repository."""

    id: str = Field(default_factory=new_id)
    text: str
    created_at: datetime = Field(default_factory=utcnow)
    deliver_at: datetime | None = Field(default=None, description="Set when the echo is queued for delivery")
    delivered_at: datetime | None = None
    source_session_id: str


class FileTouch(BaseModel):
    reads: int = 0
    writes: int = 0
    last_touched: datetime = Field(default_factory=utcnow)


class FlowSummary(BaseModel):
    """Derived flow metrics for a session as of a point in time."""

    session_duration_ms: int = 0
    total_active_ms: int = 0
    total_idle_ms: int = 0
    deep_flow_blocks: int = 0
    total_deep_flow_ms: int = 0
    longest_deep_flow_ms: int = 0
    drift_blocks: int = 0
    context_loss_gaps: int = 0
    label: FlowLabel = "steady"


class Session(BaseModel):
    """One continuous tracked unit of work against a repository."""

    id: str = Field(default_factory=new_id)
    handle: str = Field(description="Logical caller handle (terminal tab, repo key, MCP client)")
    repo_key: str = Field(description="Repository root or absolute working directory")
    cwd: str
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    end_reason: str | None = None
    activity: list[datetime] = Field(default_factory=list)
    idle_gaps: list[IdleGap] = Field(default_factory=list)
    intent: Intent | None = None
    intents: list[Intent] = Field(default_factory=list)
    parked_thoughts: list[ParkedThought] = Field(default_factory=list)
    time_echoes: list[TimeEcho] = Field(default_factory=list)
    file_touches: dict[str, FileTouch] = Field(default_factory=dict)
    flow_summary: FlowSummary | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def repo_name(self) -> str:
        return Path(self.repo_key).name or self.repo_key


class SessionView(Session):
    """Read-only snapshot of a session with a freshly computed flow summary."""

    idle_for_ms: int | None = None
    paused: bool = False


class RecentSession(BaseModel):
    id: str
    repo_key: str
    cwd: str
    ended_at: datetime | None = None
    intent: Intent | None = None


class RepoContext(BaseModel):
    """Cross-session state scoped to one repository."""

    pending_echoes: list[TimeEcho] = Field(default_factory=list)
    delivered_echoes: list[TimeEcho] = Field(default_factory=list)
    parked_thoughts: list[ParkedThought] = Field(default_factory=list)
    include_trace: bool = False


class ActiveSession(BaseModel):
    """Registry entry for a handle with a live session.

    ``last_activity_at`` drives idle detection; ``last_sample_at`` only
    throttles the coalesced activity log.
    """

    handle: str
    session_id: str
    last_activity_at: datetime
    last_sample_at: datetime
    idle_started_at: datetime | None = None

    @property
    def is_idle(self) -> bool:
        return self.idle_started_at is not None

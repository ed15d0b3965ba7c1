"""Activity ledger and idle-gap bookkeeping for a live session.

The ledger never reads the clock itself; callers pass ``now``.
"""

from datetime import datetime, timedelta

from loguru import logger

from vibeflow.config import ACTIVITY_SAMPLE_INTERVAL
from vibeflow.context.models import ActiveSession, IdleGap, Session


def open_idle_gap(tracker: ActiveSession) -> bool:
    """Mark the session idle since its last activity. No-op if already idle."""
    if tracker.is_idle:
        return False
    tracker.idle_started_at = tracker.last_activity_at
    logger.debug("Session {} idle since {}", tracker.session_id, tracker.idle_started_at)
    return True


def close_idle_gap(tracker: ActiveSession, session: Session, now: datetime) -> IdleGap | None:
    """Close an open idle gap at *now*, appending it to the session."""
    start = tracker.idle_started_at
    if start is None:
        return None
    tracker.idle_started_at = None
    if now <= start:
        return None

    gap = IdleGap(start_at=start, end_at=now)
    session.idle_gaps.append(gap)
    logger.debug("Session {} idle gap closed ({} ms)", session.id, gap.duration_ms)
    return gap


def record_activity(
    tracker: ActiveSession,
    session: Session,
    source: str,
    now: datetime,
    sample_interval: timedelta = ACTIVITY_SAMPLE_INTERVAL,
) -> bool:
    """Record activity from *source* at *now*.

    Returns True when persisted session state changed (a gap was closed or
    a sample was appended), i.e. when a save should be scheduled.
    """
    tracker.last_activity_at = now
    changed = close_idle_gap(tracker, session, now) is not None

    if now - tracker.last_sample_at >= sample_interval:
        session.activity.append(now)
        tracker.last_sample_at = now
        changed = True

    if changed:
        logger.trace("Activity on {} from {}", session.id, source)
    return changed

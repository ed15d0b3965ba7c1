"""Flow classification: turn a session's idle gaps into a flow label."""

from datetime import datetime

from vibeflow.context.models import FlowLabel, FlowSummary, IdleGap, Session, duration_ms

DEEP_FLOW_BLOCK_MS = 15 * 60 * 1000
DEEP_FLOW_TOTAL_MS = 20 * 60 * 1000
DRIFT_BLOCK_MIN_MS = 30 * 1000
DRIFT_BLOCK_MAX_MS = 5 * 60 * 1000
CONTEXT_LOSS_GAP_MS = 5 * 60 * 1000
DRIFT_BLOCKS_FOR_LABEL = 3


def active_blocks(session: Session, as_of: datetime) -> list[tuple[datetime, datetime]]:
    """Return the maximal intervals of ``[started_at, as_of]`` not covered by a gap."""
    gaps = sorted(session.idle_gaps, key=lambda gap: gap.start_at)
    blocks: list[tuple[datetime, datetime]] = []
    cursor = session.started_at

    for gap in gaps:
        if gap.start_at > cursor:
            blocks.append((cursor, min(gap.start_at, as_of)))
        cursor = max(cursor, gap.end_at)
        if cursor >= as_of:
            break

    if as_of > cursor:
        blocks.append((cursor, as_of))
    return [(start, end) for start, end in blocks if end > start]


def classify(
    deep_flow_blocks: int,
    total_deep_flow_ms: int,
    context_loss_gaps: int,
    drift_blocks: int,
) -> FlowLabel:
    if deep_flow_blocks > 0 and total_deep_flow_ms >= DEEP_FLOW_TOTAL_MS:
        return "deep-flow"
    if context_loss_gaps > 0:
        return "context-loss"
    if drift_blocks >= DRIFT_BLOCKS_FOR_LABEL:
        return "drift"
    return "steady"


def compute_flow_summary(session: Session, as_of: datetime) -> FlowSummary:
    """Compute flow metrics for *session* as of *as_of*.

    Pure: the same session and ``as_of`` always give the same summary.
    Active blocks are the complement of the idle gaps, so active plus idle
    time always equals the session duration.
    """
    as_of = max(as_of, session.started_at)
    gaps: list[IdleGap] = sorted(session.idle_gaps, key=lambda gap: gap.start_at)
    blocks = active_blocks(session, as_of)

    total_idle_ms = sum(gap.duration_ms for gap in gaps)
    total_active_ms = sum(duration_ms(start, end) for start, end in blocks)

    deep_flow_blocks = 0
    total_deep_flow_ms = 0
    longest_deep_flow_ms = 0
    drift_blocks = 0

    for start, end in blocks:
        block_ms = duration_ms(start, end)
        if block_ms >= DEEP_FLOW_BLOCK_MS:
            deep_flow_blocks += 1
            total_deep_flow_ms += block_ms
            longest_deep_flow_ms = max(longest_deep_flow_ms, block_ms)
        elif DRIFT_BLOCK_MIN_MS <= block_ms <= DRIFT_BLOCK_MAX_MS:
            drift_blocks += 1
        # 5-15 minute blocks are deliberately left unclassified

    context_loss_gaps = sum(1 for gap in gaps if gap.duration_ms >= CONTEXT_LOSS_GAP_MS)

    return FlowSummary(
        session_duration_ms=duration_ms(session.started_at, as_of),
        total_active_ms=total_active_ms,
        total_idle_ms=total_idle_ms,
        deep_flow_blocks=deep_flow_blocks,
        total_deep_flow_ms=total_deep_flow_ms,
        longest_deep_flow_ms=longest_deep_flow_ms,
        drift_blocks=drift_blocks,
        context_loss_gaps=context_loss_gaps,
        label=classify(deep_flow_blocks, total_deep_flow_ms, context_loss_gaps, drift_blocks),
    )


def format_duration(ms: int) -> str:
    """Human duration: ``1h 05m``, ``4m 09s`` or ``12s``."""
    total = max(0, ms // 1000)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def format_clock(ms: int) -> str:
    total = max(0, ms // 1000)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"

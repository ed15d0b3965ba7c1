"""Tests for flow classification."""

import random
from datetime import timedelta

from vibeflow.context.flow import active_blocks, compute_flow_summary, format_clock, format_duration
from vibeflow.context.models import IdleGap, Session

from conftest import T0

MIN = 60 * 1000


def at(minutes: float):
    return T0 + timedelta(minutes=minutes)


def make_session(gaps: list[tuple[float, float]]) -> Session:
    return Session(
        handle="tab-1",
        repo_key="/repo",
        cwd="/repo",
        started_at=T0,
        idle_gaps=[IdleGap(start_at=at(a), end_at=at(b)) for a, b in gaps],
    )


def random_session(rng: random.Random, span: float) -> Session:
    """Non-overlapping gaps inside [0, span] minutes, in shuffled order."""
    points = sorted(round(rng.uniform(0, span), 2) for _ in range(2 * rng.randint(0, 6)))
    pairs = [(a, b) for a, b in zip(points[::2], points[1::2]) if b > a]
    rng.shuffle(pairs)
    return make_session(pairs)


class TestComputeFlowSummary:
    def test_no_gaps_is_one_block(self):
        summary = compute_flow_summary(make_session([]), at(10))
        assert summary.session_duration_ms == 10 * MIN
        assert summary.total_active_ms == 10 * MIN
        assert summary.total_idle_ms == 0
        assert summary.label == "steady"

    def test_active_plus_idle_equals_duration(self):
        rng = random.Random(7)
        for _ in range(200):
            session = random_session(rng, 120)
            as_of = at(120 + rng.uniform(0, 30))
            summary = compute_flow_summary(session, as_of)
            assert summary.total_active_ms + summary.total_idle_ms == summary.session_duration_ms

    def test_gap_order_does_not_matter(self):
        forward = make_session([(2, 8), (20, 26)])
        backward = make_session([(20, 26), (2, 8)])
        assert compute_flow_summary(forward, at(40)) == compute_flow_summary(backward, at(40))

    def test_blocks_are_complement_of_gaps(self):
        blocks = active_blocks(make_session([(2, 8), (20, 26)]), at(40))
        assert blocks == [(at(0), at(2)), (at(8), at(20)), (at(26), at(40))]

    def test_as_of_before_start_is_empty(self):
        summary = compute_flow_summary(make_session([]), T0 - timedelta(minutes=1))
        assert summary.session_duration_ms == 0
        assert summary.total_active_ms == 0

    def test_never_deep_flow_without_long_block(self):
        rng = random.Random(11)
        for _ in range(200):
            session = random_session(rng, 60)
            summary = compute_flow_summary(session, at(60))
            longest = max(
                ((end - start) for start, end in active_blocks(session, at(60))),
                default=timedelta(0),
            )
            if longest < timedelta(minutes=15):
                assert summary.label != "deep-flow"
                assert summary.deep_flow_blocks == 0

    def test_long_gap_is_context_loss_unless_deep_flow(self):
        rng = random.Random(23)
        for _ in range(200):
            session = random_session(rng, 90)
            summary = compute_flow_summary(session, at(90))
            if any(gap.duration_ms >= 5 * MIN for gap in session.idle_gaps):
                assert summary.label in ("context-loss", "deep-flow")
                if summary.label == "deep-flow":
                    assert summary.total_deep_flow_ms >= 20 * MIN

    def test_deep_flow_needs_twenty_minutes_total(self):
        # One 16 minute block is deep flow but not enough for the label
        summary = compute_flow_summary(make_session([(16, 18)]), at(19))
        assert summary.deep_flow_blocks == 1
        assert summary.longest_deep_flow_ms == 16 * MIN
        assert summary.label == "steady"

    def test_deep_flow_beats_context_loss(self):
        summary = compute_flow_summary(make_session([(25, 35)]), at(36))
        assert summary.context_loss_gaps == 1
        assert summary.label == "deep-flow"

    def test_mid_length_blocks_are_unclassified(self):
        # 10 minute blocks are neither drift nor deep flow
        summary = compute_flow_summary(make_session([(10, 12), (22, 24), (34, 36)]), at(46))
        assert summary.deep_flow_blocks == 0
        assert summary.drift_blocks == 0
        assert summary.label == "steady"

    def test_drift_block_bounds(self):
        # blocks of 29s, 30s, 5min and 5min+1s
        session = make_session([(29 / 60, 3), (3.5, 6), (11, 13), (18 + 1 / 60, 20)])
        summary = compute_flow_summary(session, at(20))
        assert summary.drift_blocks == 2


class TestScenarios:
    def test_idle_from_start(self):
        summary = compute_flow_summary(make_session([(0, 6)]), at(6))
        assert summary.total_idle_ms == 6 * MIN
        assert summary.total_active_ms == 0
        assert summary.context_loss_gaps == 1
        assert summary.label == "context-loss"

    def test_continuous_work_is_deep_flow(self):
        summary = compute_flow_summary(make_session([]), at(25))
        assert summary.deep_flow_blocks == 1
        assert summary.total_deep_flow_ms == 25 * MIN
        assert summary.label == "deep-flow"

    def test_six_minute_gap_is_context_loss(self):
        summary = compute_flow_summary(make_session([(1, 7)]), at(10))
        assert summary.context_loss_gaps == 1
        assert summary.label == "context-loss"

    def test_three_short_blocks_is_drift(self):
        summary = compute_flow_summary(make_session([(1.5, 4), (5.5, 8), (9.5, 12)]), at(13.5))
        assert summary.drift_blocks == 4
        assert summary.context_loss_gaps == 0
        assert summary.label == "drift"


class TestFormatting:
    def test_format_duration(self):
        assert format_duration(12_000) == "12s"
        assert format_duration(249_000) == "4m 09s"
        assert format_duration(3_900_000) == "1h 05m"
        assert format_duration(-5) == "0s"

    def test_format_clock(self):
        assert format_clock(65_000) == "01:05"
        assert format_clock(3_725_000) == "01:02:05"

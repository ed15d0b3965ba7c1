"""Tests for activity recording and idle-gap bookkeeping."""

from datetime import timedelta

import pytest

from vibeflow.context.ledger import close_idle_gap, open_idle_gap, record_activity
from vibeflow.context.models import ActiveSession, Session

from conftest import T0


@pytest.fixture
def session():
    return Session(handle="tab", repo_key="/repo", cwd="/repo", started_at=T0, activity=[T0])


@pytest.fixture
def tracker(session):
    return ActiveSession(handle="tab", session_id=session.id, last_activity_at=T0, last_sample_at=T0)


class TestRecordActivity:
    def test_samples_are_coalesced(self, tracker, session):
        for ms in (200, 400, 900):
            record_activity(tracker, session, "pty-output", T0 + timedelta(milliseconds=ms))
        assert session.activity == [T0]
        assert tracker.last_activity_at == T0 + timedelta(milliseconds=900)

        assert record_activity(tracker, session, "pty-output", T0 + timedelta(seconds=1))
        assert session.activity == [T0, T0 + timedelta(seconds=1)]

    def test_unsampled_activity_reports_no_change(self, tracker, session):
        assert not record_activity(tracker, session, "pty-input", T0 + timedelta(milliseconds=10))

    def test_closes_open_gap(self, tracker, session):
        open_idle_gap(tracker)
        now = T0 + timedelta(minutes=7)
        record_activity(tracker, session, "pty-input", now)

        assert tracker.idle_started_at is None
        assert len(session.idle_gaps) == 1
        gap = session.idle_gaps[0]
        assert gap.start_at == T0
        assert gap.end_at == now
        assert gap.duration_ms == 7 * 60 * 1000


class TestIdleGaps:
    def test_open_is_idempotent(self, tracker):
        assert open_idle_gap(tracker)
        assert tracker.is_idle
        tracker.last_activity_at = T0 + timedelta(minutes=1)
        assert not open_idle_gap(tracker)
        assert tracker.idle_started_at == T0

    def test_close_without_open_gap(self, tracker, session):
        assert close_idle_gap(tracker, session, T0 + timedelta(minutes=1)) is None
        assert session.idle_gaps == []

    def test_zero_length_gap_is_dropped(self, tracker, session):
        open_idle_gap(tracker)
        assert close_idle_gap(tracker, session, T0) is None
        assert tracker.idle_started_at is None
        assert not tracker.is_idle
        assert session.idle_gaps == []

    def test_gaps_stay_ordered_and_disjoint(self, tracker, session):
        now = T0
        for _ in range(5):
            now += timedelta(minutes=6)
            open_idle_gap(tracker)
            record_activity(tracker, session, "pty-input", now)
            now += timedelta(minutes=2)
            record_activity(tracker, session, "pty-input", now)

        gaps = session.idle_gaps
        assert len(gaps) == 5
        for earlier, later in zip(gaps, gaps[1:]):
            assert earlier.end_at <= later.start_at
        assert all(gap.end_at > gap.start_at for gap in gaps)

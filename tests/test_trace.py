"""Tests for the in-repo trace artifact."""

import json

from vibeflow.context.trace import IGNORE_ENTRY, read_trace, set_trace_ignored, trace_path


class TestTraceToggle:
    def test_off_by_default(self, engine, repo):
        engine.start_session("tab", cwd=repo)
        engine.end_session("tab")
        assert not trace_path(repo.resolve()).exists()

    def test_enabled_trace_written_on_end(self, engine, repo):
        key = str(repo.resolve())
        engine.set_include_trace(key, True)
        engine.start_session("tab", cwd=repo / "src")
        engine.set_intent("tab", "ship the release")
        session = engine.end_session("tab", "pty-exit")

        data = json.loads(trace_path(repo.resolve()).read_text())
        assert data["session_id"] == session.id
        assert data["intent"] == "ship the release"
        assert data["end_reason"] == "pty-exit"
        assert data["flow_summary"]["label"] == session.flow_summary.label
        assert engine.read_trace(key) == data

    def test_gitignore_follows_toggle(self, engine, repo):
        key = str(repo.resolve())
        gitignore = repo / ".gitignore"
        gitignore.write_text("__pycache__/\n")

        engine.set_include_trace(key, False)
        assert gitignore.read_text().splitlines() == ["__pycache__/", IGNORE_ENTRY]

        engine.set_include_trace(key, True)
        assert gitignore.read_text().splitlines() == ["__pycache__/"]
        assert engine.get_include_trace(key)

    def test_setting_persists(self, engine, repo):
        key = str(repo.resolve())
        engine.set_include_trace(key, True)
        assert not engine.store.dirty
        assert json.loads(engine.store.state_path.read_text())["repos"][key]["include_trace"] is True


class TestTraceFiles:
    def test_plain_directory_has_no_trace(self, tmp_path):
        assert read_trace(str(tmp_path)) is None
        assert not set_trace_ignored(str(tmp_path), True)

    def test_ignore_is_idempotent(self, repo):
        key = str(repo.resolve())
        assert set_trace_ignored(key, True)
        assert not set_trace_ignored(key, True)
        assert (repo / ".gitignore").read_text() == f"{IGNORE_ENTRY}\n"

    def test_unreadable_trace(self, repo):
        path = trace_path(repo.resolve())
        path.parent.mkdir()
        path.write_text("[broken")
        assert read_trace(str(repo.resolve())) is None

"""Tests for the vf command line."""

import pytest
from typer.testing import CliRunner

from vibeflow.cli import app
from vibeflow.context.store import SessionStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def workspace(repo, data_dir, monkeypatch):
    monkeypatch.setenv("VF_DATA_DIR", str(data_dir))
    monkeypatch.delenv("VF_IDLE_TIMEOUT", raising=False)
    monkeypatch.chdir(repo)
    return repo


@pytest.fixture
def key(repo):
    return str(repo.resolve())


def vf(*args):
    return runner.invoke(app, list(args))


def saved(data_dir, scheduler):
    return SessionStore(data_dir, scheduler=scheduler)


class TestSessionCommands:
    def test_start_and_end(self, data_dir, scheduler, key):
        result = vf("start")
        assert result.exit_code == 0, result.output
        assert "Session started." in result.output

        result = vf("start")
        assert "Session already active:" in result.output

        result = vf("end")
        assert result.exit_code == 0, result.output
        assert "Session ended." in result.output

        store = saved(data_dir, scheduler)
        assert len(store.sessions) == 1
        assert store.sessions[0].end_reason == "cli-end"
        assert store.sessions[0].repo_key == key
        assert store.active == {}

    def test_start_from_subdirectory_uses_repo(self, repo, data_dir, scheduler, key, monkeypatch):
        monkeypatch.chdir(repo / "src" / "pkg")
        vf("start")
        assert list(saved(data_dir, scheduler).active) == [key]

    def test_commands_need_a_session(self):
        result = vf("intent", "fix", "the", "parser")
        assert result.exit_code == 1
        assert "No active session" in result.output

        result = vf("end")
        assert result.exit_code == 1

    def test_activity_quiet_without_session(self):
        assert vf("activity", "--quiet").exit_code == 0

    def test_intent_park_and_touch(self, data_dir, scheduler, key):
        vf("start")
        assert "Intent saved." in vf("intent", "fix", "the", "parser").output
        assert "Thought parked:" in vf("park", "check", "error", "codes").output
        assert vf("touch", "src/pkg/mod.py").exit_code == 0
        assert vf("activity", "-s", "prompt").exit_code == 0

        session = saved(data_dir, scheduler).sessions[0]
        assert session.intent.text == "fix the parser"
        assert [t.text for t in session.parked_thoughts] == ["check error codes"]
        assert session.file_touches["src/pkg/mod.py"].writes == 1

    def test_empty_intent_is_rejected(self):
        vf("start")
        result = vf("intent", " ")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_invalid_idle_timeout(self):
        result = vf("--idle-timeout", "soon", "status")
        assert result.exit_code == 1
        assert "Invalid idle timeout" in result.output

    def test_version(self):
        result = vf("--version")
        assert result.exit_code == 0
        assert "vibeflow" in result.output


class TestEchoFlow:
    def test_echo_greets_next_session(self, data_dir, scheduler, key):
        vf("start")
        assert "Time echo saved." in vf("echo", "rerun", "migrations").output
        vf("end")

        result = vf("start")
        assert "Time echoes from your last session" in result.output
        assert "rerun migrations" in result.output

        again = vf("status")
        assert "Time echoes from your last session" not in again.output

        (echo,) = saved(data_dir, scheduler).peek_repo(key).delivered_echoes
        result = vf("echoes", "park", echo.id)
        assert result.exit_code == 0, result.output

        result = vf("echoes", "discard", echo.id)
        assert result.exit_code == 1
        assert "Time echo not found" in result.output

        thoughts = saved(data_dir, scheduler).peek_repo(key).parked_thoughts
        assert [t.text for t in thoughts] == ["rerun migrations"]


class TestQueries:
    def test_status_without_sessions(self):
        result = vf("status")
        assert result.exit_code == 0
        assert "No sessions found for this repo." in result.output

    def test_history_and_receipt(self, data_dir, scheduler):
        vf("start")
        vf("intent", "write", "docs")
        vf("end")

        result = vf("history")
        assert result.exit_code == 0, result.output
        assert "write docs" in result.output

        result = vf("receipt")
        assert result.exit_code == 0, result.output
        assert "VibeFlow Session Receipt" in result.output
        assert "Intent: write docs" in result.output

        assert "Session not found" in vf("receipt", "nope").output

    def test_resume_lists_thoughts(self):
        vf("start")
        vf("park", "benchmark", "the", "loader")
        vf("end")
        result = vf("resume")
        assert "Last session:" in result.output
        assert "benchmark the loader" in result.output


class TestDeletion:
    def test_delete_session(self, data_dir, scheduler):
        vf("start")
        vf("end")
        session_id = saved(data_dir, scheduler).sessions[0].id

        assert vf("delete", session_id).exit_code == 0
        assert saved(data_dir, scheduler).sessions == []

        result = vf("delete", session_id)
        assert result.exit_code == 1
        assert "Session not found" in result.output

    def test_thought_delete(self, data_dir, scheduler, key):
        vf("start")
        vf("park", "one")
        thought_id = saved(data_dir, scheduler).peek_repo(key).parked_thoughts[0].id

        assert vf("thoughts", "delete", thought_id).exit_code == 0
        assert "No parked thoughts" in vf("thoughts", "list").output
        assert "Thought not found" in vf("thoughts", "delete", thought_id).output

    def test_forget(self, data_dir, scheduler, key):
        vf("start")
        vf("park", "gone", "soon")
        result = vf("forget", "--yes")
        assert result.exit_code == 0, result.output

        store = saved(data_dir, scheduler)
        assert store.sessions == []
        assert store.peek_repo(key) is None
        assert store.active == {}


class TestTraceCommands:
    def test_trace_toggle(self, repo, data_dir, scheduler, key):
        assert vf("trace", "off").exit_code == 0
        assert ".vibeflow/" in (repo / ".gitignore").read_text()

        assert vf("trace", "on").exit_code == 0
        assert ".vibeflow/" not in (repo / ".gitignore").read_text()

        vf("start")
        vf("intent", "trace", "me")
        vf("end")
        assert (repo / ".vibeflow" / "trace.json").exists()

        result = vf("trace", "show")
        assert result.exit_code == 0, result.output
        assert "trace me" in result.output

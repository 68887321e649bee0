# Copyright 2026. Tests for the event stream, registry and status command.

import json
import types
from unittest.mock import patch

import pytest

from stepline.core.events import (
    REGISTRY_MAX_BYTES,
    SCHEMA_VERSION,
    Event,
    EventType,
    append_event,
    append_registry,
    collect_sessions,
    cmd_status,
    emit,
    read_events,
    rotate_registry,
    summarize_run,
)


@pytest.fixture
def sessions_base(tmp_path):
    with patch("stepline.core.session.SESSIONS_BASE", tmp_path):
        yield tmp_path


def _event(**fields) -> Event:
    base = dict(v=SCHEMA_VERSION, event="step_started", ts="2026-03-01T09:00:00Z",
                session="/runs/ci_1", pipeline="ci")
    base.update(fields)
    return Event(**base)


class TestEventJson:
    def test_required_fields_always_present(self):
        d = json.loads(Event(v=1, event="pipeline_started", ts="t", session="").to_json())
        assert d == {"v": 1, "event": "pipeline_started", "ts": "t", "session": ""}

    def test_unset_optionals_are_dropped(self):
        d = json.loads(_event(step="Build", exit_code=0, duration_s=0.0).to_json())
        assert d["step"] == "Build"
        assert "exit_code" not in d
        assert "duration_s" not in d

    def test_populated_optionals_are_kept(self):
        d = json.loads(_event(error="connection reset", retries=2, exit_code=1).to_json())
        assert (d["error"], d["retries"], d["exit_code"]) == ("connection reset", 2, 1)

    def test_now_stamps_utc(self):
        ev = Event.now(EventType.VARIABLE_SET, "/runs/x", name="CI_JOB_NAME")
        assert ev.event == "variable_set"
        assert ev.ts.endswith("Z")
        assert ev.v == SCHEMA_VERSION


class TestEventType:
    def test_run_level_events(self):
        assert EventType.PIPELINE_CANCELLED.is_run_level
        assert not EventType.STEP_TIMED_OUT.is_run_level


class TestAppendEvent:
    def test_appends_lines(self, tmp_path):
        append_event(str(tmp_path), _event())
        append_event(str(tmp_path), _event(event="step_passed"))
        lines = (tmp_path / "events.jsonl").read_text().splitlines()
        assert [json.loads(line)["event"] for line in lines] == ["step_started", "step_passed"]

    def test_missing_dir_is_ignored(self, tmp_path):
        append_event(str(tmp_path / "gone"), _event())

    def test_no_session_is_noop(self):
        append_event("", _event())


class TestRegistry:
    def test_append_creates_parents(self, tmp_path):
        path = tmp_path / "nested" / "registry.jsonl"
        append_registry(_event(event="pipeline_started"), path)
        append_registry(_event(event="pipeline_failed"), path)
        assert [json.loads(x)["event"] for x in path.read_text().splitlines()] == [
            "pipeline_started", "pipeline_failed",
        ]

    def test_rotates_at_size_cap(self, tmp_path):
        path = tmp_path / "registry.jsonl"
        path.write_text("x" * REGISTRY_MAX_BYTES)
        rotated = rotate_registry(path)
        assert rotated is not None
        assert rotated.name.startswith("registry.") and rotated.suffix == ".jsonl"
        assert not path.exists()

    def test_no_rotation_under_cap(self, tmp_path):
        path = tmp_path / "registry.jsonl"
        path.write_text("small")
        assert rotate_registry(path) is None
        assert rotate_registry(tmp_path / "missing.jsonl") is None
        assert path.exists()

    def test_append_starts_fresh_file_after_rotation(self, tmp_path):
        path = tmp_path / "registry.jsonl"
        path.write_text("x" * REGISTRY_MAX_BYTES)
        append_registry(_event(event="pipeline_started"), path)
        assert json.loads(path.read_text())["event"] == "pipeline_started"
        assert len(list(tmp_path.glob("registry.*.jsonl"))) == 1


class TestEmit:
    def test_run_level_event_also_goes_to_registry(self, sessions_base):
        sd = sessions_base / "runs" / "ci_1"
        sd.mkdir(parents=True)
        ev = emit(str(sd), EventType.PIPELINE_STARTED, pipeline="ci")
        assert ev.pipeline == "ci"
        assert read_events(str(sd))[0]["event"] == "pipeline_started"
        assert json.loads((sessions_base / "registry.jsonl").read_text())["session"] == str(sd)

    def test_step_event_stays_in_session(self, sessions_base):
        emit(str(sessions_base), EventType.STEP_STARTED, step="Build")
        assert (sessions_base / "events.jsonl").is_file()
        assert not (sessions_base / "registry.jsonl").exists()

    def test_read_events_filters_by_type(self, tmp_path):
        emit(str(tmp_path), EventType.STEP_STARTED, step="Build")
        emit(str(tmp_path), EventType.STEP_FAILED, step="Build", exit_code=2)
        with (tmp_path / "events.jsonl").open("a") as f:
            f.write("not json\n\n")
        assert [e["event"] for e in read_events(str(tmp_path))] == ["step_started", "step_failed"]
        failed = read_events(str(tmp_path), EventType.STEP_FAILED)
        assert [e["exit_code"] for e in failed] == [2]

    def test_read_events_missing_session(self, tmp_path):
        assert read_events(str(tmp_path / "nope")) == []


class TestStatus:
    def _run(self, base, name, phase, updated="2026-03-01T09:05:00Z"):
        sd = base / "runs" / name
        sd.mkdir(parents=True)
        state = {
            "pipeline": "ci", "session_dir": str(sd), "phase": phase,
            "steps": {"build": {"outcome": "succeeded"}, "test": {"outcome": "running"},
                      "deploy": {"outcome": "pending"}},
            "created_at": "2026-03-01T09:00:00Z", "updated_at": updated,
        }
        (sd / "run-state.json").write_text(json.dumps(state))
        return sd

    def test_summarize_run(self):
        summary = summarize_run("ci_1", {"phase": "running", "current_step": "Test",
                                         "steps": {"a": {"outcome": "skipped"}, "b": {}}})
        assert summary["status"] == "running"
        assert summary["progress"] == "1/2"
        assert summary["steps"] == {"a": "skipped", "b": "pending"}

    def test_lists_runs(self, sessions_base, capsys):
        self._run(sessions_base, "ci_1", "running")
        assert cmd_status(types.SimpleNamespace(active=False, limit=20)) == 0
        [run] = json.loads(capsys.readouterr().out)
        assert run["name"] == "ci_1"
        assert run["progress"] == "1/3"

    def test_active_only(self, sessions_base, capsys):
        self._run(sessions_base, "done", "succeeded")
        self._run(sessions_base, "busy", "running")
        cmd_status(types.SimpleNamespace(active=True, limit=20))
        assert [s["name"] for s in json.loads(capsys.readouterr().out)] == ["busy"]

    def test_newest_first_with_limit(self, sessions_base, capsys):
        for i in range(4):
            self._run(sessions_base, f"r{i}", "failed", updated=f"2026-03-01T09:0{i}:00Z")
        cmd_status(types.SimpleNamespace(active=False, limit=2))
        assert [s["name"] for s in json.loads(capsys.readouterr().out)] == ["r3", "r2"]

    def test_unreadable_state_is_skipped(self, tmp_path):
        broken = tmp_path / "runs" / "broken"
        broken.mkdir(parents=True)
        (broken / "run-state.json").write_text("{oops")
        assert collect_sessions(tmp_path) == []
        assert collect_sessions(tmp_path / "empty") == []

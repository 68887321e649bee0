# Copyright 2026. Per-run event stream, the cross-run registry and `stepline status`.

import enum
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from stepline.core import session
from stepline.core.session import REGISTRY_FILENAME, RUNS_SUBSYSTEM, STATE_FILENAME

SCHEMA_VERSION = 1
EVENTS_FILENAME = "events.jsonl"
REGISTRY_MAX_BYTES = 512 * 1024


class EventType(str, enum.Enum):
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    PIPELINE_CANCELLED = "pipeline_cancelled"
    PIPELINE_KILLED = "pipeline_killed"
    STEP_STARTED = "step_started"
    STEP_PASSED = "step_passed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_TIMED_OUT = "step_timed_out"
    STEP_RETRIED = "step_retried"
    VARIABLE_SET = "variable_set"
    BACKGROUND_STARTED = "background_started"
    BACKGROUND_DRAINED = "background_drained"
    ARTIFACT_UPLOADED = "artifact_uploaded"

    @property
    def is_run_level(self) -> bool:
        return self.value.startswith("pipeline_")


@dataclass
class Event:
    """One line of ``events.jsonl``. Unset optional fields are not written."""

    v: int
    event: str
    ts: str
    session: str
    pipeline: str = ""
    step: str = ""
    phase: str = ""
    outcome: str = ""
    error: str = ""
    exit_code: int = 0
    retries: int = 0
    duration_s: float = 0.0
    name: str = ""
    detail: str = ""

    _REQUIRED = ("v", "event", "ts", "session")

    @classmethod
    def now(cls, event_type: EventType, session_dir: str, **fields) -> "Event":
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return cls(v=SCHEMA_VERSION, event=event_type.value, ts=ts, session=session_dir, **fields)

    def to_json(self) -> str:
        payload = {
            key: value for key, value in asdict(self).items()
            if key in self._REQUIRED or value not in ("", 0, None, False)
        }
        return json.dumps(payload, separators=(",", ":"))


def append_event(session_dir: str, event: Event) -> None:
    if not session_dir:
        return
    try:
        with open(os.path.join(session_dir, EVENTS_FILENAME), "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
    except OSError:
        pass


def registry_path() -> Path:
    return session.SESSIONS_BASE / REGISTRY_FILENAME


def rotate_registry(path: Path) -> Path | None:
    """Move ``path`` aside once it reaches REGISTRY_MAX_BYTES."""
    try:
        if not path.is_file() or path.stat().st_size < REGISTRY_MAX_BYTES:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        rotated = path.with_name(f"{path.stem}.{stamp}{path.suffix}")
        os.replace(path, rotated)
        return rotated
    except OSError:
        return None


def append_registry(event: Event, path: Path | None = None) -> None:
    path = path or registry_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        rotate_registry(path)
        # O_APPEND keeps concurrent runs' lines whole.
        with open(path, "ab") as f:
            f.write((event.to_json() + "\n").encode("utf-8"))
    except OSError:
        pass


def emit(session_dir: str, event_type: EventType, **fields) -> Event:
    event = Event.now(event_type, session_dir, **fields)
    append_event(session_dir, event)
    if event_type.is_run_level:
        append_registry(event)
    return event


def read_events(session_dir: str, *kinds: EventType) -> list[dict]:
    """Parsed events of one session in write order, optionally filtered by type."""
    wanted = {k.value for k in kinds}
    events: list[dict] = []
    try:
        with open(os.path.join(session_dir, EVENTS_FILENAME), encoding="utf-8") as f:
            lines = f.readlines()
    except OSError:
        return events
    for line in lines:
        if not line.strip():
            continue
        try:
            ev = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not wanted or ev.get("event") in wanted:
            events.append(ev)
    return events


# -- stepline status ----------------------------------------------------------

def summarize_run(name: str, state: dict) -> dict:
    steps = {step_id: s.get("outcome", "pending") for step_id, s in state.get("steps", {}).items()}
    finished = sum(1 for outcome in steps.values() if outcome not in ("pending", "running"))
    return {
        "name": name,
        "pipeline": state.get("pipeline", ""),
        "session_dir": state.get("session_dir", ""),
        "status": state.get("phase", "not_started"),
        "cancelled": state.get("cancelled", False),
        "current_step": state.get("current_step", ""),
        "progress": f"{finished}/{len(steps)}",
        "steps": steps,
        "created_at": state.get("created_at", ""),
        "updated_at": state.get("updated_at", ""),
    }


def collect_sessions(base: Path | None = None) -> list[dict]:
    runs = (base or session.SESSIONS_BASE) / RUNS_SUBSYSTEM
    if not runs.is_dir():
        return []
    summaries = []
    for state_file in runs.glob(f"*/{STATE_FILENAME}"):
        try:
            state = json.loads(state_file.read_text())
        except (json.JSONDecodeError, OSError):
            continue
        summaries.append(summarize_run(state_file.parent.name, state))
    return sorted(summaries, key=lambda s: s["updated_at"], reverse=True)


def cmd_status(args) -> int:
    sessions = collect_sessions()
    if getattr(args, "active", False):
        sessions = [s for s in sessions if s["status"] == "running"]
    print(json.dumps(sessions[:getattr(args, "limit", 20)], indent=2))
    return 0

"""Run status model and its on-disk form."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from stepline.core.state import LockedStateManager
from .errors import RetryExhausted, StepFailure, StepTimeout


class PipelineStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def after(self, step_failed: bool, continue_on_error: bool) -> "PipelineStatus":
        """Status once a step has finished. Failure is sticky."""
        if self is PipelineStatus.FAILED:
            return self
        if step_failed and not continue_on_error:
            return PipelineStatus.FAILED
        return self


class RunPhase(str, enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepOutcome(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


EXIT_TIMEOUT = 124


@dataclass(frozen=True)
class StepResult:
    exit_code: int
    duration_s: float = 0.0
    stdout: str = ""
    stderr: str = ""
    retries: int = 0
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


@dataclass(frozen=True)
class StepRecord:
    index: int
    name: str
    phase: str
    outcome: StepOutcome
    result: StepResult | None = None
    reason: str = ""
    continue_on_error: bool = False
    attempts: int = 1

    def failure(self) -> StepFailure | None:
        """The error this record represents, or None for a clean step."""
        if self.result is None or self.outcome in (StepOutcome.SUCCEEDED, StepOutcome.SKIPPED):
            return None
        if self.outcome is StepOutcome.TIMED_OUT:
            return StepTimeout(self.name, self.result.exit_code)
        if self.attempts > 1:
            return RetryExhausted(self.name, self.result.exit_code, self.attempts)
        return StepFailure(self.name, self.result.exit_code)


def outcome_for(result: StepResult) -> StepOutcome:
    if result.timed_out:
        return StepOutcome.TIMED_OUT
    return StepOutcome.SUCCEEDED if result.exit_code == 0 else StepOutcome.FAILED


@dataclass
class StepState:
    outcome: StepOutcome = StepOutcome.PENDING
    phase: str = "main"
    exit_code: int = 0
    duration_s: float = 0.0
    retries: int = 0
    reason: str = ""


@dataclass
class RunState:
    pipeline: str = ""
    pipeline_file: str = ""
    session_dir: str = ""
    phase: RunPhase = RunPhase.NOT_STARTED
    status: PipelineStatus = PipelineStatus.SUCCEEDED
    cancelled: bool = False
    current_step: str = ""
    steps: dict[str, StepState] = field(default_factory=dict)
    step_order: list[str] = field(default_factory=list)
    variables_set: dict[str, str] = field(default_factory=dict)
    background_note: str = ""
    driver_pid: int = 0
    created_at: str = ""
    updated_at: str = ""


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _state_to_dict(state: RunState) -> dict:
    d = {
        "pipeline": state.pipeline,
        "pipeline_file": state.pipeline_file,
        "session_dir": state.session_dir,
        "phase": state.phase.value,
        "status": state.status.value,
        "cancelled": state.cancelled,
        "current_step": state.current_step,
        "steps": {},
        "step_order": state.step_order,
        "variables_set": state.variables_set,
        "background_note": state.background_note,
        "driver_pid": state.driver_pid,
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }
    for key, ss in state.steps.items():
        step_dict: dict = {"outcome": ss.outcome.value, "phase": ss.phase}
        if ss.exit_code:
            step_dict["exit_code"] = ss.exit_code
        if ss.duration_s:
            step_dict["duration_s"] = round(ss.duration_s, 3)
        if ss.retries:
            step_dict["retries"] = ss.retries
        if ss.reason:
            step_dict["reason"] = ss.reason
        d["steps"][key] = step_dict
    return d


def _dict_to_state(d: dict) -> RunState:
    steps: dict[str, StepState] = {}
    for key, val in d.get("steps", {}).items():
        steps[key] = StepState(
            outcome=StepOutcome(val.get("outcome", "pending")),
            phase=val.get("phase", "main"),
            exit_code=val.get("exit_code", 0),
            duration_s=val.get("duration_s", 0.0),
            retries=val.get("retries", 0),
            reason=val.get("reason", ""),
        )

    return RunState(
        pipeline=d.get("pipeline", ""),
        pipeline_file=d.get("pipeline_file", ""),
        session_dir=d.get("session_dir", ""),
        phase=RunPhase(d.get("phase", "not_started")),
        status=PipelineStatus(d.get("status", "succeeded")),
        cancelled=d.get("cancelled", False),
        current_step=d.get("current_step", ""),
        steps=steps,
        step_order=d.get("step_order", []),
        variables_set=d.get("variables_set", {}),
        background_note=d.get("background_note", ""),
        driver_pid=d.get("driver_pid", 0),
        created_at=d.get("created_at", ""),
        updated_at=d.get("updated_at", ""),
    )


class StateManager:
    """Run state in ``run-state.json`` with fcntl locking and atomic writes."""

    def __init__(self, state_file: Path):
        self.state_file = state_file
        self._mgr = LockedStateManager(state_file, _state_to_dict, _dict_to_state)

    def exists(self) -> bool:
        return self._mgr.exists()

    def load(self) -> RunState:
        return self._mgr.load()

    def save(self, state: RunState) -> None:
        state.updated_at = _now_iso()
        if not state.created_at:
            state.created_at = state.updated_at
        self._mgr.save(state)

    def update(self, mutator: Callable[[RunState], None]) -> RunState:
        def _with_timestamp(s: RunState) -> None:
            mutator(s)
            s.updated_at = _now_iso()
        return self._mgr.update(_with_timestamp)

"""Pipeline Driver: runs an ordered step list against one facts snapshot.

Steps run one at a time in declaration order. A failing step flips the
pipeline status to failed (sticky) but never stops the loop; each later step's
own condition decides whether it still runs. The background task is started
before the first step and drained exactly once at teardown, before the deploy
phase.
"""

import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable

from stepline.core.events import EventType, emit
from stepline.core.logging import LABEL_WIDTH, StatusWriter, log_activity, utc_timestamp, write_json
from stepline.core.session import STATE_FILENAME
from stepline.executor.engine import background
from stepline.executor.engine.conditions import evaluate, to_expression
from stepline.executor.engine.facts import EnvironmentFacts
from stepline.executor.engine.publish import Publisher
from stepline.executor.engine.registry import PipelineDefinition, StepDefinition, assign_ids
from stepline.executor.engine.retry import with_retry
from stepline.executor.engine.runner import CommandRunner, parse_directives
from stepline.executor.engine.state import (
    EXIT_TIMEOUT,
    PipelineStatus,
    RunPhase,
    RunState,
    StateManager,
    StepOutcome,
    StepRecord,
    StepResult,
    StepState,
    outcome_for,
)
from stepline.executor.report import RunReport, write_report

EXIT_STEP_FAILURE = 1
EXIT_CANCELLED = EXIT_TIMEOUT
REASON_CANCELLED = "cancelled"


# ── Terminal UI ────────────────────────────────────────────────────────────

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
CYAN = "\033[36m"

_activity_log_path: str | None = None


def _safe_print(*args, **kwargs):
    """Print to stdout, silently ignoring BrokenPipeError."""
    try:
        print(*args, **kwargs)
    except BrokenPipeError:
        pass


def log(step, msg, style=""):
    ts = utc_timestamp()
    _safe_print(f"{DIM}[{ts}]{RESET} {step:<{LABEL_WIDTH}.{LABEL_WIDTH}s} {style}{msg}{RESET}", flush=True)
    if _activity_log_path:
        log_activity(_activity_log_path, step, msg)


def log_ok(step, msg, duration_s=None):
    dur = f"  {DIM}{duration_s:.0f}s{RESET}" if duration_s else ""
    log(step, f"{GREEN}✓{RESET} {msg}{dur}")


def log_fail(step, msg):
    log(step, f"{RED}✗{RESET} {msg}")


def log_skip(step, msg):
    log(step, f"{DIM}- {msg}{RESET}")


def log_info(step, msg):
    log(step, f"⣾ {msg}", style=CYAN)


def log_note(step, msg):
    log(step, f"{YELLOW}! {msg}{RESET}")


def log_headline(msg):
    _safe_print(f"\n{BOLD}{msg}{RESET}\n")


# ── Step logs ──────────────────────────────────────────────────────────────

def _write_step_log(log_dir: Path, record: StepRecord, slug: str, command: str) -> None:
    result = record.result
    if result is None:
        return
    stdout = result.stdout if result.stdout.strip() else "(no stdout)"
    stderr = result.stderr if result.stderr.strip() else "(no stderr)"
    text = (
        f"=== {record.name} ===\n"
        f"Command: {command}\n"
        f"Duration: ({result.duration_s:.1f}s)\n"
        f"Exit Code: {result.exit_code}\n"
        f"Retries: {result.retries}\n\n"
        f"=== STDOUT ===\n{stdout}\n\n"
        f"=== STDERR ===\n{stderr}\n\n"
        f"=== END ===\n"
    )
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / f"{record.index + 1:02d}-{slug}.log").write_text(text, encoding="utf-8")
    except OSError:
        pass


class PipelineDriver:
    def __init__(
        self,
        definition: PipelineDefinition,
        facts: EnvironmentFacts,
        runner: CommandRunner | None = None,
        publisher: Publisher | None = None,
        session_dir: str = "",
        cwd: str | None = None,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        status_interval: float = 15.0,
    ):
        if any(not s.id for s in definition.all_steps()):
            assign_ids(definition.all_steps())
        self.definition = definition
        self.facts = facts
        self.runner = runner or CommandRunner()
        self.publisher = publisher
        self.session_dir = session_dir
        self.cwd = cwd
        self.deadline = deadline if deadline is not None else definition.deadline
        self.clock = clock
        self.sleep = sleep

        self.phase = RunPhase.NOT_STARTED
        self.status = PipelineStatus.SUCCEEDED
        self.cancelled = False
        self.records: list[StepRecord] = []
        self.handle: background.TaskHandle | None = None
        self.drain_count = 0
        self._started_at = 0.0
        self._state = RunState(
            pipeline=definition.name,
            pipeline_file=definition.source,
            session_dir=session_dir,
            step_order=[s.id for s in definition.all_steps()],
            steps={s.id: StepState(phase=s.phase) for s in definition.all_steps()},
            driver_pid=os.getpid(),
        )
        self._state_mgr = StateManager(Path(session_dir) / STATE_FILENAME) if session_dir else None
        self._status_writer = StatusWriter(self._write_status, interval=status_interval) if session_dir else None

    # -- persistence ----------------------------------------------------------

    def _save(self) -> None:
        if self._state_mgr is None:
            return
        self._state.phase = self.phase
        self._state.status = self.status
        self._state.cancelled = self.cancelled
        self._state_mgr.save(self._state)

    def _emit(self, event_type: EventType, **kwargs) -> None:
        if not self.session_dir:
            return
        emit(self.session_dir, event_type, pipeline=self.definition.name, **kwargs)

    def _write_status(self) -> None:
        records = list(self.records)
        status = {
            "pipeline": self.definition.name,
            "phase": self.phase.value,
            "status": self.status.value,
            "current_step": self._state.current_step,
            "completed": len(records),
            "total": len(self.definition.all_steps()),
            "elapsed_s": round(self.clock() - self._started_at, 1),
        }
        write_json(os.path.join(self.session_dir, "run-status.json"), status)

    # -- deadline -------------------------------------------------------------

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - (self.clock() - self._started_at)

    def _cancel(self, step_name: str) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self.status = PipelineStatus.FAILED
        log_fail(step_name, f"run deadline of {self.deadline:.0f}s exceeded, cancelling")

    # -- steps ----------------------------------------------------------------

    def _shell_for(self, step: StepDefinition) -> str:
        if step.shell != "default":
            return step.shell
        return "cmd" if self.facts.get("Agent.OS") == "Windows_NT" else "bash"

    def _cwd_for(self, step: StepDefinition) -> str | None:
        if not step.working_directory:
            return self.cwd
        wd = self.facts.expand(step.working_directory)
        return wd if os.path.isabs(wd) or self.cwd is None else os.path.join(self.cwd, wd)

    def _run_once(self, step: StepDefinition, command: str, env: dict[str, str]) -> StepResult:
        timeout = self.definition.timeout_for(step)
        remaining = self.remaining()
        if remaining is not None:
            if remaining <= 0:
                return StepResult(exit_code=EXIT_TIMEOUT, stderr="run deadline reached\n", timed_out=True)
            timeout = min(timeout, remaining)
        return self.runner.run(command, env=env, timeout=timeout,
                               cwd=self._cwd_for(step), shell=self._shell_for(step))

    def _publish_once(self, step: StepDefinition) -> StepResult:
        spec = step.publish
        start = self.clock()
        if self.publisher is None:
            return StepResult(exit_code=1, stderr="no publisher configured\n")
        local = self.facts.expand(spec.path)
        if self.cwd and not os.path.isabs(local):
            local = os.path.join(self.cwd, local)
        remote = self.facts.expand(spec.remote)
        try:
            res = self.publisher.upload(local, remote, spec.visibility)
        except (OSError, ValueError) as e:
            return StepResult(exit_code=1, duration_s=self.clock() - start, stderr=f"{e}\n")
        self._emit(EventType.ARTIFACT_UPLOADED, step=step.name, detail=remote,
                   outcome="ok" if res.ok else "failed")
        return StepResult(
            exit_code=0 if res.ok else 1,
            duration_s=self.clock() - start,
            stdout=f"{local} -> {remote} ({spec.visibility}): {res.message}\n",
        )

    def _dispatch(self, step: StepDefinition) -> StepResult:
        command = self.facts.expand(step.command)
        env = self.facts.to_environ({k: self.facts.expand(v) for k, v in step.env.items()})

        def run_once() -> StepResult:
            if step.publish is not None:
                return self._publish_once(step)
            return self._run_once(step, command, env)

        if step.retry is None:
            return run_once()

        def _before_sleep(attempt: int, result: StepResult) -> None:
            log_info(step.name, f"attempt {attempt}/{step.retry.attempts} failed "
                                f"(exit {result.exit_code}), retrying")
            self._emit(EventType.STEP_RETRIED, step=step.name, retries=attempt,
                       exit_code=result.exit_code)

        return with_retry(run_once, step.retry.attempts, step.retry.backoff,
                          sleep=self.sleep, before_sleep=_before_sleep, time_left=self.remaining)

    def _apply_directives(self, index: int, step: StepDefinition, stdout: str) -> None:
        for name, value in parse_directives(stdout):
            if name == "PATH":
                current = self.facts.get("PATH") or self.facts.environ.get("PATH", "")
                value = value + os.pathsep + current if current else value
            self.facts = self.facts.with_variable(name, value, origin=index)
            self._state.variables_set[name] = value
            log_info(step.name, f"set variable {name}")
            self._emit(EventType.VARIABLE_SET, step=step.name, name=name)

    def _record(self, step: StepDefinition, record: StepRecord) -> None:
        self.records.append(record)
        ss = self._state.steps[step.id]
        ss.outcome = record.outcome
        ss.reason = record.reason
        if record.result is not None:
            ss.exit_code = record.result.exit_code
            ss.duration_s = record.result.duration_s
            ss.retries = record.result.retries
        self._save()

    def _skip(self, index: int, step: StepDefinition, reason: str) -> None:
        self._record(step, StepRecord(index=index, name=step.name, phase=step.phase,
                                      outcome=StepOutcome.SKIPPED, reason=reason,
                                      continue_on_error=step.continue_on_error))
        self._emit(EventType.STEP_SKIPPED, step=step.name, phase=step.phase, detail=reason)

    def run_step(self, index: int, step: StepDefinition) -> StepRecord:
        if self.cancelled:
            self._skip(index, step, REASON_CANCELLED)
            return self.records[-1]
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            self._cancel(step.name)
            self._skip(index, step, REASON_CANCELLED)
            return self.records[-1]

        if not evaluate(step.condition, self.facts, self.status):
            log_skip(step.name, f"skipped, condition false: {to_expression(step.condition)}")
            self._skip(index, step, "condition false")
            return self.records[-1]

        log_info(step.name, "running")
        self._state.current_step = step.id
        self._state.steps[step.id].outcome = StepOutcome.RUNNING
        self._save()
        self._emit(EventType.STEP_STARTED, step=step.name, phase=step.phase)

        result = self._dispatch(step)
        result = replace(result, stdout=self.facts.mask(result.stdout),
                         stderr=self.facts.mask(result.stderr))
        self._apply_directives(index, step, result.stdout)

        outcome = outcome_for(result)
        if result.timed_out:
            remaining = self.remaining()
            if remaining is not None and remaining <= 0:
                self._cancel(step.name)
        self.status = self.status.after(not result.passed, step.continue_on_error)

        record = StepRecord(index=index, name=step.name, phase=step.phase, outcome=outcome,
                            result=result, continue_on_error=step.continue_on_error,
                            attempts=result.retries + 1)
        self._record(step, record)
        if self.session_dir:
            _write_step_log(Path(self.session_dir) / "logs", record, step.id,
                            step.command if step.publish is None else "publish")

        if outcome is StepOutcome.SUCCEEDED:
            log_ok(step.name, "passed" + (f" after {result.retries} retries" if result.retries else ""),
                   result.duration_s)
            self._emit(EventType.STEP_PASSED, step=step.name, phase=step.phase,
                       duration_s=round(result.duration_s, 3), retries=result.retries)
        else:
            tail = (result.stderr or result.stdout).strip().splitlines()[-1:] or [""]
            label = "timed out" if outcome is StepOutcome.TIMED_OUT else f"failed (exit {result.exit_code})"
            if step.continue_on_error:
                label += ", continuing on error"
            log_fail(step.name, f"{label} {tail[0][:120]}".rstrip())
            self._emit(
                EventType.STEP_TIMED_OUT if outcome is StepOutcome.TIMED_OUT else EventType.STEP_FAILED,
                step=step.name, phase=step.phase, exit_code=result.exit_code,
                retries=result.retries, duration_s=round(result.duration_s, 3),
                error=tail[0][:200],
            )
        return record

    # -- background -----------------------------------------------------------

    def _start_background(self) -> None:
        spec = self.definition.background
        if spec is None:
            return
        self.handle = background.start(
            self.facts.expand(spec.command), self.facts.expand(spec.sink),
            cwd=self.cwd, env=self.facts.to_environ(),
        )
        if self.handle.start_error:
            log_note("background", f"failed to start: {self.handle.start_error}")
        else:
            log_info("background", f"started: {spec.command}")
        self._emit(EventType.BACKGROUND_STARTED, detail=spec.command)

    def drain_background(self) -> bytes | None:
        if self.handle is None or self.handle.drained:
            return self.handle.output if self.handle else None
        spec = self.definition.background
        self.drain_count += 1
        upload = None
        if spec.upload is not None:
            upload = background.UploadTarget(
                remote=self.facts.expand(spec.upload.remote), visibility=spec.upload.visibility,
            )
        data = background.drain(
            self.handle, publisher=self.publisher, upload=upload,
            should_upload=lambda: evaluate(spec.upload_condition, self.facts, self.status),
        )
        note = "; ".join(self.handle.notes)
        self._state.background_note = note
        if note:
            log_note("background", note)
        else:
            log_ok("background", f"collected {len(data or b'')} bytes from {self.handle.sink.name}")
        self._emit(EventType.BACKGROUND_DRAINED, detail=note or f"{len(data or b'')} bytes")
        self._save()
        return data

    # -- lifecycle ------------------------------------------------------------

    def _exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        return 0 if self.status is PipelineStatus.SUCCEEDED else EXIT_STEP_FAILURE

    def run(self) -> RunReport:
        global _activity_log_path
        if self.phase is not RunPhase.NOT_STARTED:
            raise RuntimeError("a PipelineDriver runs once")

        self._started_at = self.clock()
        self.phase = RunPhase.RUNNING
        if self.session_dir:
            os.makedirs(self.session_dir, exist_ok=True)
            _activity_log_path = os.path.join(self.session_dir, "pipeline-activity.log")
        self._save()
        self._emit(EventType.PIPELINE_STARTED)
        log_headline(f"{self.definition.name}: {len(self.definition.steps)} steps, "
                     f"{len(self.definition.deploy)} deploy steps on {self.facts.get('Agent.OS')}")
        if self._status_writer:
            self._status_writer.start()

        try:
            self._start_background()
            try:
                for i, step in enumerate(self.definition.steps):
                    self.run_step(i, step)
            finally:
                self.drain_background()

            offset = len(self.definition.steps)
            for j, step in enumerate(self.definition.deploy):
                self.run_step(offset + j, step)
        except BaseException as e:
            self.status = PipelineStatus.FAILED
            self.phase = RunPhase.FAILED
            self._save()
            self._emit(EventType.PIPELINE_KILLED, error=type(e).__name__)
            raise
        finally:
            if self._status_writer:
                self._status_writer.stop()
                self._status_writer.write_now()
            _activity_log_path = None

        return self._finish()

    def _finish(self) -> RunReport:
        self.phase = RunPhase.SUCCEEDED if self.status is PipelineStatus.SUCCEEDED else RunPhase.FAILED
        self._state.current_step = ""
        self._save()

        if self.cancelled:
            self._emit(EventType.PIPELINE_CANCELLED)
        elif self.phase is RunPhase.SUCCEEDED:
            self._emit(EventType.PIPELINE_COMPLETED)
        else:
            self._emit(EventType.PIPELINE_FAILED)

        report = RunReport(
            pipeline=self.definition.name,
            phase=self.phase,
            status=self.status,
            exit_code=self._exit_code(),
            records=list(self.records),
            cancelled=self.cancelled,
            background_note=self._state.background_note,
            duration_s=self.clock() - self._started_at,
            session_dir=self.session_dir,
        )
        if self.session_dir:
            write_report(self.session_dir, report)

        style = GREEN if report.succeeded else RED
        suffix = " (cancelled by deadline)" if self.cancelled else ""
        log_headline(f"{style}{self.definition.name}: {self.phase.value}{suffix}{RESET}")
        return report

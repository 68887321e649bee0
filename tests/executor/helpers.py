
"""Shared fixtures and helpers for pipeline engine tests."""

import tempfile
from dataclasses import dataclass, field

from stepline.executor.engine.conditions import parse_condition
from stepline.executor.engine.facts import EnvironmentFacts, snapshot
from stepline.executor.engine.publish import UploadResult
from stepline.executor.engine.registry import PipelineDefinition, StepDefinition, assign_ids
from stepline.executor.engine.state import StepResult


def make_temp_dir() -> str:
    """Create a temporary directory. Caller must clean up."""
    return tempfile.mkdtemp(prefix="pipeline_test_")


def make_step(name: str, command: str = "", condition: str | None = None, **kwargs) -> StepDefinition:
    return StepDefinition(
        name=name,
        command=command or f"echo {name}",
        condition=parse_condition(condition),
        **kwargs,
    )


def make_definition(steps: list[StepDefinition], deploy: list[StepDefinition] | None = None,
                    **kwargs) -> PipelineDefinition:
    definition = PipelineDefinition(name=kwargs.pop("name", "test-pipeline"), steps=steps,
                                    deploy=deploy or [], **kwargs)
    assign_ids(definition.all_steps())
    return definition


def make_facts(variables: dict[str, str] | None = None, secrets: dict[str, str] | None = None,
               system: str = "Linux") -> EnvironmentFacts:
    environ = {"PATH": "/usr/bin:/bin", **(secrets or {})}
    return snapshot(variables=variables, secrets=list(secrets or {}), environ=environ, system=system)


def ok(stdout: str = "") -> StepResult:
    return StepResult(exit_code=0, duration_s=0.1, stdout=stdout)


def fail(code: int = 1, stderr: str = "boom") -> StepResult:
    return StepResult(exit_code=code, duration_s=0.1, stderr=stderr)


def timed_out() -> StepResult:
    return StepResult(exit_code=124, duration_s=1.0, timed_out=True)


@dataclass
class RunCall:
    command: str
    env: dict
    timeout: float | None
    cwd: str | None
    shell: str


class FakeRunner:
    """Scripted CommandRunner stand-in.

    ``script`` maps a command text to a StepResult, a list of StepResults
    (consumed one per call, last one repeats), or a callable taking the
    RunCall. Unknown commands pass.
    """

    def __init__(self, script: dict | None = None, on_run=None):
        self.script = dict(script or {})
        self.calls: list[RunCall] = []
        self.on_run = on_run

    def run(self, command, env=None, timeout=None, cwd=None, shell="bash") -> StepResult:
        call = RunCall(command, dict(env or {}), timeout, cwd, shell)
        self.calls.append(call)
        if self.on_run is not None:
            self.on_run(call)
        planned = self.script.get(command, ok())
        if callable(planned):
            return planned(call)
        if isinstance(planned, list):
            return planned.pop(0) if len(planned) > 1 else planned[0]
        return planned

    @property
    def commands(self) -> list[str]:
        return [c.command for c in self.calls]


@dataclass
class FakePublisher:
    ok: bool = True
    raises: Exception | None = None
    uploads: list[tuple[str, str, str]] = field(default_factory=list)

    def upload(self, local_path, remote_location, visibility="private") -> UploadResult:
        self.uploads.append((local_path, remote_location, visibility))
        if self.raises is not None:
            raise self.raises
        return UploadResult(ok=self.ok, remote=remote_location,
                            message="uploaded" if self.ok else "403 Forbidden")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

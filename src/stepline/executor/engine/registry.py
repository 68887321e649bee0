"""Pipeline document loading and step definition resolution."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from stepline.core.session import sanitize_slug
from .background import UploadTarget
from .conditions import DEFAULT_CONDITION, Always, Condition, parse_condition
from .errors import ConditionSyntaxError, PipelineConfigError
from .publish import VISIBILITIES
from .retry import Backoff, RetryPolicy

DEFAULT_TIMEOUT_S = 3600
SHELL_CHOICES = ("default", "bash", "sh", "cmd")

# CI spelling -> field name
_ALIASES = {
    "displayName": "name",
    "continueOnError": "continue_on_error",
    "workingDirectory": "working_directory",
    "timeoutInMinutes": "timeout_minutes",
}
_STEP_KINDS = ("bash", "script", "command", "publish")
_STEP_KEYS = set(_STEP_KINDS) | {
    "name", "condition", "continue_on_error", "working_directory", "timeout",
    "timeout_minutes", "env", "retry", "shell",
}


@dataclass(frozen=True)
class PublishSpec:
    path: str
    remote: str
    visibility: str = "private"


@dataclass
class StepDefinition:
    name: str
    id: str = ""
    command: str = ""
    shell: str = "bash"
    condition: Condition = DEFAULT_CONDITION
    continue_on_error: bool = False
    timeout: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    retry: RetryPolicy | None = None
    publish: PublishSpec | None = None
    working_directory: str = ""
    phase: str = "main"
    source: str = ""


@dataclass
class BackgroundSpec:
    command: str
    sink: str
    upload: UploadTarget | None = None
    upload_condition: Condition = field(default_factory=Always)


@dataclass
class PipelineDefinition:
    name: str
    steps: list[StepDefinition]
    deploy: list[StepDefinition] = field(default_factory=list)
    default_timeout: float = DEFAULT_TIMEOUT_S
    deadline: float | None = None
    variables: dict[str, str] = field(default_factory=dict)
    secrets: list[str] = field(default_factory=list)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    background: BackgroundSpec | None = None
    source: str = ""

    def all_steps(self) -> list[StepDefinition]:
        return list(self.steps) + list(self.deploy)

    def timeout_for(self, step: StepDefinition) -> float:
        return step.timeout if step.timeout is not None else self.default_timeout


# -- Reading -----------------------------------------------------------------

def _read_document(path: Path) -> Any:
    if not path.is_file():
        raise PipelineConfigError("file not found", str(path))
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PipelineConfigError(f"cannot parse: {e}", str(path)) from e


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _positive_number(value: Any, location: str, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise PipelineConfigError(f"{what} must be a positive number, got {value!r}", location)
    return float(value)


def _parse_backoff(raw: Any, location: str) -> Backoff:
    if raw is None:
        return Backoff()
    if isinstance(raw, str):
        raw = {"kind": raw}
    if not isinstance(raw, dict):
        raise PipelineConfigError(f"backoff must be a string or mapping, got {raw!r}", location)
    kind = raw.get("kind", raw.get("backoff", "exponential"))
    if kind not in ("exponential", "fixed"):
        raise PipelineConfigError(f"unknown backoff kind {kind!r}", location)
    return Backoff(
        kind=kind,
        delay=float(raw.get("delay", 1.0)),
        max_delay=float(raw.get("max_delay", 60.0)),
    )


def _parse_retry(raw: Any, default: RetryPolicy, location: str) -> RetryPolicy | None:
    if raw is None or raw is False:
        return None
    if raw is True:
        return default
    if isinstance(raw, int) and not isinstance(raw, bool):
        if raw < 1:
            raise PipelineConfigError(f"retry attempts must be >= 1, got {raw}", location)
        return RetryPolicy(attempts=raw, backoff=default.backoff)
    if isinstance(raw, dict):
        attempts = raw.get("attempts", default.attempts)
        if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 1:
            raise PipelineConfigError(f"retry attempts must be >= 1, got {attempts!r}", location)
        backoff = default.backoff
        if any(k in raw for k in ("backoff", "delay", "max_delay")):
            backoff = _parse_backoff(
                {k: raw[k] for k in ("backoff", "delay", "max_delay") if k in raw}, location,
            )
        return RetryPolicy(attempts=attempts, backoff=backoff)
    raise PipelineConfigError(f"retry must be true, an attempt count or a mapping, got {raw!r}", location)


def _parse_condition(raw: Any, location: str) -> Condition:
    try:
        return parse_condition(raw)
    except ConditionSyntaxError as e:
        raise ConditionSyntaxError(str(e), location) from None


def _parse_publish(raw: Any, location: str) -> PublishSpec:
    if not isinstance(raw, dict) or "path" not in raw or "remote" not in raw:
        raise PipelineConfigError("publish needs 'path' and 'remote'", location)
    visibility = raw.get("visibility", "private")
    if visibility not in VISIBILITIES:
        raise PipelineConfigError(f"unknown visibility {visibility!r}", location)
    return PublishSpec(path=str(raw["path"]), remote=str(raw["remote"]), visibility=visibility)


def _parse_step(raw: dict, default_retry: RetryPolicy, phase: str, location: str) -> StepDefinition:
    data = {_ALIASES.get(k, k): v for k, v in raw.items()}
    unknown = set(data) - _STEP_KEYS
    if unknown:
        raise PipelineConfigError(f"unknown step keys: {sorted(unknown)}", location)
    kinds = [k for k in _STEP_KINDS if k in data]
    if len(kinds) != 1:
        raise PipelineConfigError(f"a step needs exactly one of {list(_STEP_KINDS)}", location)
    kind = kinds[0]

    step = StepDefinition(name="", phase=phase, source=location)
    if kind == "publish":
        step.publish = _parse_publish(data["publish"], location)
        step.name = data.get("name") or f"Publish {step.publish.path}"
    else:
        step.command = str(data[kind])
        # `script` runs through cmd on Windows agents, resolved at run time.
        step.shell = data.get("shell", "default" if kind == "script" else "bash")
        if step.shell not in SHELL_CHOICES:
            raise PipelineConfigError(f"unknown shell {step.shell!r}", location)
        step.name = data.get("name") or (step.command.strip().splitlines() or [kind])[0][:60]

    step.condition = _parse_condition(data.get("condition"), location)
    step.continue_on_error = bool(data.get("continue_on_error", False))
    if "timeout_minutes" in data:
        step.timeout = _positive_number(data["timeout_minutes"], location, "timeoutInMinutes") * 60
    if "timeout" in data:
        step.timeout = _positive_number(data["timeout"], location, "timeout")
    env = data.get("env") or {}
    if not isinstance(env, dict):
        raise PipelineConfigError("env must be a mapping", location)
    step.env = {str(k): _scalar(v) for k, v in env.items()}
    step.retry = _parse_retry(data.get("retry"), default_retry, location)
    step.working_directory = str(data.get("working_directory", ""))
    return step


def _expand_steps(raw_steps: Any, base_dir: Path, default_retry: RetryPolicy,
                  phase: str, location: str, stack: tuple[Path, ...]) -> list[StepDefinition]:
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, list):
        raise PipelineConfigError("steps must be a list", location)

    steps: list[StepDefinition] = []
    for i, raw in enumerate(raw_steps):
        here = f"{location}[{i}]"
        if not isinstance(raw, dict):
            raise PipelineConfigError(f"step must be a mapping, got {raw!r}", here)
        if "template" in raw:
            template_path = (base_dir / str(raw["template"])).resolve()
            if template_path in stack:
                raise PipelineConfigError(f"recursive template {template_path.name}", here)
            doc = _read_document(template_path)
            nested = doc.get("steps") if isinstance(doc, dict) else doc
            steps.extend(_expand_steps(
                nested, template_path.parent, default_retry, phase,
                f"{template_path.name}:steps", stack + (template_path,),
            ))
            continue
        steps.append(_parse_step(raw, default_retry, phase, here))
    return steps


def assign_ids(steps: list[StepDefinition]) -> None:
    seen: dict[str, int] = {}
    for step in steps:
        base = sanitize_slug(step.name) or "step"
        seen[base] = seen.get(base, 0) + 1
        step.id = base if seen[base] == 1 else f"{base}-{seen[base]}"


def _parse_background(raw: Any, location: str) -> BackgroundSpec | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not raw.get("command") or not raw.get("sink"):
        raise PipelineConfigError("background needs 'command' and 'sink'", location)
    spec = BackgroundSpec(command=str(raw["command"]), sink=str(raw["sink"]))
    upload = raw.get("upload")
    if upload is not None:
        if not isinstance(upload, dict) or "remote" not in upload:
            raise PipelineConfigError("background upload needs 'remote'", location)
        visibility = upload.get("visibility", "private")
        if visibility not in VISIBILITIES:
            raise PipelineConfigError(f"unknown visibility {visibility!r}", location)
        spec.upload = UploadTarget(remote=str(upload["remote"]), visibility=visibility)
        if "condition" in upload:
            spec.upload_condition = _parse_condition(upload["condition"], f"{location}.upload")
    return spec


def parse_pipeline(data: Any, base_dir: Path | None = None, source: str = "<memory>",
                   stack: tuple[Path, ...] = ()) -> PipelineDefinition:
    if not isinstance(data, dict):
        raise PipelineConfigError("pipeline document must be a mapping", source)
    base_dir = base_dir or Path.cwd()

    retry_raw = data.get("retry") or {}
    if not isinstance(retry_raw, dict):
        raise PipelineConfigError("retry must be a mapping", f"{source}:retry")
    default_retry = RetryPolicy(
        attempts=int(retry_raw.get("attempts", RetryPolicy.attempts)),
        backoff=_parse_backoff(
            {k: retry_raw[k] for k in ("backoff", "delay", "max_delay") if k in retry_raw} or None,
            f"{source}:retry",
        ),
    )

    steps = _expand_steps(data.get("steps"), base_dir, default_retry, "main", f"{source}:steps", stack)
    deploy = _expand_steps(data.get("deploy"), base_dir, default_retry, "deploy", f"{source}:deploy", stack)
    if not steps and not deploy:
        raise PipelineConfigError("pipeline has no steps", source)
    assign_ids(steps + deploy)

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise PipelineConfigError("variables must be a mapping", f"{source}:variables")
    secrets = data.get("secrets") or []
    if not isinstance(secrets, list):
        raise PipelineConfigError("secrets must be a list of names", f"{source}:secrets")

    default_timeout = DEFAULT_TIMEOUT_S
    if "default_timeout" in data:
        default_timeout = _positive_number(data["default_timeout"], f"{source}:default_timeout", "default_timeout")
    deadline = None
    if data.get("deadline") is not None:
        deadline = _positive_number(data["deadline"], f"{source}:deadline", "deadline")

    return PipelineDefinition(
        name=str(data.get("name") or Path(source).stem),
        steps=steps,
        deploy=deploy,
        default_timeout=default_timeout,
        deadline=deadline,
        variables={str(k): _scalar(v) for k, v in variables.items()},
        secrets=[str(s) for s in secrets],
        retry=default_retry,
        background=_parse_background(data.get("background"), f"{source}:background"),
        source=source,
    )


def load_pipeline(path: str | Path) -> PipelineDefinition:
    path = Path(path).resolve()
    return parse_pipeline(_read_document(path), path.parent, str(path), stack=(path,))

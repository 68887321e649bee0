"""Artifact publishing: the boundary deploy steps and the background drain upload through."""

import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .retry import Backoff, with_retry
from .runner import CommandRunner
from .state import StepResult

VISIBILITIES = {"private", "public-read"}


@dataclass(frozen=True)
class UploadResult:
    ok: bool
    remote: str
    message: str = ""
    result: StepResult | None = None


class Publisher(Protocol):
    def upload(self, local_path: str, remote_location: str,
               visibility: str = "private") -> UploadResult: ...


def _check_visibility(visibility: str) -> None:
    if visibility not in VISIBILITIES:
        raise ValueError(f"Unknown visibility {visibility!r}; expected one of {sorted(VISIBILITIES)}")


class DirectoryPublisher:
    """Copies artifacts under a local root directory that stands in for a bucket.

    ``remote_location`` may carry a scheme (``s3://bucket/key``); the scheme is
    dropped and the rest is used as a path below ``root``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _target(self, remote_location: str) -> Path:
        rel = remote_location.split("://", 1)[-1].lstrip("/")
        target = (self.root / rel).resolve()
        if self.root.resolve() not in target.parents and target != self.root.resolve():
            raise ValueError(f"Remote location escapes publish root: {remote_location}")
        return target

    def upload(self, local_path: str, remote_location: str,
               visibility: str = "private") -> UploadResult:
        _check_visibility(visibility)
        source = Path(local_path)
        if not source.exists():
            return UploadResult(ok=False, remote=remote_location, message=f"{local_path} does not exist")
        target = self._target(remote_location)
        try:
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
        except OSError as e:
            return UploadResult(ok=False, remote=remote_location, message=str(e))
        if visibility == "public-read":
            (target.parent / f"{target.name}.public").touch()
        return UploadResult(ok=True, remote=remote_location, message=f"copied to {target}")


DEFAULT_UPLOAD_COMMAND = "aws s3 cp --no-progress --recursive --acl {visibility} {local} {remote}"


class CommandPublisher:
    """Uploads by running a command template.

    Placeholders: ``{local}``, ``{remote}``, ``{visibility}`` (shell-quoted).
    One command per upload by default; a publish step's own retry policy
    decides whether it is tried again. ``attempts`` > 1 retries inside
    ``upload`` for callers that have no policy of their own.
    """

    def __init__(self, template: str = DEFAULT_UPLOAD_COMMAND,
                 runner: CommandRunner | None = None,
                 env: dict[str, str] | None = None,
                 attempts: int = 1, backoff: Backoff | None = None,
                 timeout: float = 1800):
        self.template = template
        self.runner = runner or CommandRunner()
        self.env = env
        self.attempts = attempts
        self.backoff = backoff or Backoff()
        self.timeout = timeout

    def upload(self, local_path: str, remote_location: str,
               visibility: str = "private") -> UploadResult:
        _check_visibility(visibility)
        command = self.template.format(
            local=shlex.quote(local_path),
            remote=shlex.quote(remote_location),
            visibility=shlex.quote(visibility),
        )
        result = with_retry(
            lambda: self.runner.run(command, env=self.env, timeout=self.timeout),
            self.attempts, self.backoff,
        )
        message = result.output.strip().splitlines()[-1] if result.output.strip() else ""
        return UploadResult(ok=result.passed, remote=remote_location, message=message, result=result)

"""Step execution: run one command text under a timeout, capture its output."""

import os
import re
import shutil
import signal
import subprocess
import time
from typing import Mapping

from .state import EXIT_TIMEOUT, StepResult

EXIT_NOT_FOUND = 127
KILL_GRACE_S = 5

# Shell used for each step flavour; the text is handed over as one script.
SHELLS = {
    "bash": ["bash", "--noprofile", "--norc", "-c"],
    "sh": ["sh", "-c"],
    "cmd": ["cmd.exe", "/d", "/s", "/c"],
}

_DIRECTIVE_RE = re.compile(r"^##stepline\[(?P<kind>[\w-]+)(?:\s+(?P<args>[^\]]*))?\](?P<value>.*)$")


def _kill_group(proc: subprocess.Popen) -> None:
    """Terminate the step's process group, escalating to SIGKILL."""
    if os.name != "posix":
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        proc.wait(timeout=KILL_GRACE_S)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


class CommandRunner:
    """Runs command text through a shell. Never retries on its own."""

    def __init__(self, shells: Mapping[str, list[str]] | None = None):
        self.shells = dict(shells or SHELLS)

    def run(self, command: str, env: Mapping[str, str] | None = None,
            timeout: float | None = None, cwd: str | None = None,
            shell: str = "bash") -> StepResult:
        try:
            argv = self.shells[shell]
        except KeyError:
            raise ValueError(f"Unknown shell {shell!r}; expected one of {sorted(self.shells)}") from None
        if not shutil.which(argv[0], path=(env or os.environ).get("PATH")):
            return StepResult(exit_code=EXIT_NOT_FOUND, stderr=f"{argv[0]}: command not found\n")

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv + [command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            return StepResult(exit_code=EXIT_NOT_FOUND, stderr=f"{e}\n")

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            return StepResult(
                exit_code=EXIT_TIMEOUT,
                duration_s=time.monotonic() - start,
                stdout=stdout.decode(errors="replace"),
                stderr=stderr.decode(errors="replace") + f"Command timed out after {timeout:.0f}s\n",
                timed_out=True,
            )
        except BaseException:
            # Interrupted by a signal: the step's group must not outlive us.
            _kill_group(proc)
            raise

        return StepResult(
            exit_code=proc.returncode,
            duration_s=time.monotonic() - start,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


def parse_directives(stdout: str) -> list[tuple[str, str]]:
    """Extract ``(NAME, VALUE)`` pairs a step announced on its stdout.

    ``##stepline[set-variable variable=NAME]VALUE`` sets NAME.
    ``##stepline[prepend-path]DIR`` is reported as ``("PATH", DIR)``; the
    caller joins it in front of the current PATH.
    """
    found: list[tuple[str, str]] = []
    for line in stdout.splitlines():
        m = _DIRECTIVE_RE.match(line.strip())
        if not m:
            continue
        kind, args, value = m.group("kind").lower(), m.group("args") or "", m.group("value")
        if kind == "set-variable":
            params = dict(p.split("=", 1) for p in args.split(";") if "=" in p)
            name = params.get("variable", "").strip()
            if name:
                found.append((name, value.strip()))
        elif kind == "prepend-path" and value.strip():
            found.append(("PATH", value.strip()))
    return found

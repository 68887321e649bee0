"""Background task supervision: one detached process per run, drained once.

The task runs alongside the whole step sequence and shares nothing with the
driver except the sink file it writes to. ``drain`` is the single join point;
it never raises, since whatever the task produced is informational.
"""

import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from .errors import BackgroundTaskError
from .publish import Publisher, UploadResult

STOP_GRACE_S = 5


@dataclass(frozen=True)
class UploadTarget:
    remote: str
    visibility: str = "private"


@dataclass
class TaskHandle:
    command: str
    sink: Path
    proc: subprocess.Popen | None = None
    started_at: float = 0.0
    start_error: str = ""
    drained: bool = False
    output: bytes | None = None
    exit_code: int | None = None
    error: BackgroundTaskError | None = None
    upload: UploadResult | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.poll() is None


def start(command: str, sink: str | Path, cwd: str | None = None,
          env: Mapping[str, str] | None = None) -> TaskHandle:
    """Launch ``command`` detached with stdout and stderr sent to ``sink``.

    Returns at once. A launch failure is kept on the handle and reported by
    ``drain``; it is not raised.
    """
    sink_path = Path(sink)
    if cwd and not sink_path.is_absolute():
        sink_path = Path(cwd) / sink_path
    handle = TaskHandle(command=command, sink=sink_path, started_at=time.monotonic())
    try:
        sink_path.parent.mkdir(parents=True, exist_ok=True)
        with open(sink_path, "wb") as out:
            handle.proc = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                start_new_session=os.name == "posix",
            )
    except OSError as e:
        handle.start_error = str(e)
    return handle


def _stop(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=STOP_GRACE_S)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


def drain(handle: TaskHandle, publisher: Publisher | None = None,
          upload: UploadTarget | None = None,
          should_upload: Callable[[], bool] | None = None) -> bytes | None:
    """Stop the task, collect its sink and make one best-effort upload.

    Idempotent: a second call returns the bytes collected by the first.
    """
    if handle.drained:
        return handle.output
    handle.drained = True

    try:
        if handle.start_error:
            raise BackgroundTaskError(f"failed to start: {handle.start_error}")
        if handle.proc is not None:
            was_running = handle.proc.poll() is None
            _stop(handle.proc)
            handle.exit_code = handle.proc.returncode
            if not was_running and handle.exit_code:
                handle.notes.append(f"background task exited early with {handle.exit_code}")
        try:
            handle.output = handle.sink.read_bytes()
        except OSError as e:
            raise BackgroundTaskError(f"cannot read {handle.sink}: {e}") from e
        if not handle.output:
            raise BackgroundTaskError(f"no output in {handle.sink}")
    except BackgroundTaskError as e:
        handle.error = e
        handle.notes.append(str(e))
        return handle.output or None

    if publisher is None or upload is None:
        return handle.output
    if should_upload is not None and not should_upload():
        handle.notes.append("upload skipped: condition false")
        return handle.output

    try:
        handle.upload = publisher.upload(str(handle.sink), upload.remote, upload.visibility)
    except Exception as e:
        handle.notes.append(f"upload raised {type(e).__name__}: {e}")
        return handle.output
    if not handle.upload.ok:
        handle.notes.append(f"upload to {upload.remote} failed: {handle.upload.message}")
    return handle.output

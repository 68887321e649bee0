# Copyright 2026. Activity log lines, status snapshots and atomic file writes.

import json
import os
import re
import tempfile
import threading
from datetime import datetime, timezone

LABEL_WIDTH = 28

_ANSI_ESCAPE = re.compile(r"\033\[[0-9;]*m")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%H:%M:%S")


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def format_activity(label: str, message: str, ts: str = "") -> str:
    """One activity-log line: ``[HH:MM:SS] <label padded> <message>``.

    Colour codes are removed so the file reads cleanly outside a terminal.
    An empty label yields an unpadded line.
    """
    stamp = f"[{ts or utc_timestamp()}]"
    message = strip_ansi(message)
    if not label:
        return f"{stamp} {message}\n"
    return f"{stamp} {label:<{LABEL_WIDTH}.{LABEL_WIDTH}s} {message}\n"


def log_activity(log_path: str, label: str, message: str) -> None:
    if not log_path:
        return
    try:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(format_activity(label, message))
    except OSError:
        pass


def atomic_write_file(path: str, content: str | bytes) -> None:
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path) or ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_json(path: str, data) -> None:
    atomic_write_file(path, json.dumps(data, indent=2) + "\n")


class StatusWriter:
    """Refreshes a run's status snapshot on a timer thread.

    ``snapshot`` is called every ``interval`` seconds between :meth:`start`
    and :meth:`stop`. Exceptions raised by ``snapshot`` are dropped.
    """

    def __init__(self, snapshot, interval: float = 15.0):
        self.snapshot = snapshot
        self.interval = interval
        self._halt = threading.Event()
        self._thread: threading.Thread | None = None

    def _loop(self) -> None:
        while not self._halt.wait(self.interval):
            self.write_now()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._halt.clear()
        self._thread = threading.Thread(target=self._loop, name="stepline-status", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread, self._thread = self._thread, None
        self._halt.set()
        if thread is not None:
            thread.join(timeout=5)

    def write_now(self) -> bool:
        try:
            self.snapshot()
        except Exception:
            return False
        return True

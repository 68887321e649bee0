# Copyright 2026. CPU usage sampler meant to run as a pipeline's background task.

"""Print one CSV line per interval: UTC timestamp and idle CPU percentage.

The idle figure covers the time since the previous sample, so the first line
appears after one interval. Run it detached with its output redirected to a
file, then look at the file once the build is over to see where the machine
sat idle (serial phases of a build show up clearly).
"""

import sys
import time
from datetime import datetime, timezone
from typing import Callable, TextIO

PROC_STAT = "/proc/stat"


class UnsupportedPlatform(RuntimeError):
    pass


def read_cpu_times(path: str = PROC_STAT) -> tuple[int, int]:
    """Return ``(idle, total)`` jiffies summed over all CPUs."""
    try:
        with open(path) as f:
            first = f.readline()
    except FileNotFoundError:
        raise UnsupportedPlatform(f"{path} not available; CPU sampling needs Linux") from None
    fields = first.split()
    if not fields or fields[0] != "cpu":
        raise UnsupportedPlatform(f"unexpected format in {path}: {first!r}")
    values = [int(v) for v in fields[1:]]
    # user nice system idle iowait irq softirq steal ...
    idle = values[3] + (values[4] if len(values) > 4 else 0)
    return idle, sum(values[:8])


def idle_percent(prev: tuple[int, int], cur: tuple[int, int]) -> float:
    idle = cur[0] - prev[0]
    total = cur[1] - prev[1]
    if total <= 0:
        return 100.0
    return 100.0 * idle / total


def sample(out: TextIO = sys.stdout, interval: float = 5.0, count: int = 0,
           reader: Callable[[], tuple[int, int]] | None = None,
           sleep: Callable[[float], None] = time.sleep) -> int:
    """Write samples until ``count`` lines were printed (0 = forever)."""
    reader = reader or read_cpu_times
    prev = reader()
    written = 0
    while count <= 0 or written < count:
        sleep(interval)
        cur = reader()
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        out.write(f"{ts},{idle_percent(prev, cur):.1f}\n")
        out.flush()
        prev = cur
        written += 1
    return written


def main(interval: float = 5.0, count: int = 0) -> int:
    try:
        sample(interval=interval, count=count)
    except UnsupportedPlatform as e:
        print(str(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0

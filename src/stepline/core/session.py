# Copyright 2026. Run session directories: naming, lookup and expiry.

import json
import os
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

SESSIONS_BASE = Path(os.environ.get(
    "STEPLINE_SESSIONS",
    str(Path.home() / ".stepline" / "sessions"),
))

RUNS_SUBSYSTEM = "runs"
STATE_FILENAME = "run-state.json"
REGISTRY_FILENAME = "registry.jsonl"

SLUG_MAX = 50
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def sanitize_slug(raw: str) -> str:
    """Lower-case, hyphenated form of the first line of ``raw``."""
    lines = raw.strip().splitlines()
    if not lines:
        return ""
    first = lines[0].strip().strip("`\"'").lower()
    return _NON_SLUG.sub("-", first).strip("-")[:SLUG_MAX]


def session_name(slug: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d_%H%M%S%fZ")
    slug = sanitize_slug(slug)
    return f"{slug}_{stamp}" if slug else stamp


def create_session(subsystem: str = RUNS_SUBSYSTEM, slug: str = "",
                   base: Path | None = None) -> Path:
    root = (base or SESSIONS_BASE) / subsystem
    path = root / session_name(slug)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _session_dirs(base: Path) -> list[Path]:
    if not base.is_dir():
        return []
    return [entry for entry in base.iterdir() if entry.is_dir()]


def find_active_session(base: Path, state_filename: str = STATE_FILENAME,
                        prefix: str = "") -> Path | None:
    """Most recently touched session under ``base`` that has a state file."""
    with_state = [
        d for d in _session_dirs(base)
        if (d / state_filename).is_file() and (not prefix or d.name.startswith(prefix + "_"))
    ]
    if not with_state:
        return None
    return max(with_state, key=lambda d: d.stat().st_mtime)


def cleanup_sessions(base: Path, older_than_days: int = 30,
                     sessions_base: Path | None = None) -> list[str]:
    """Delete sessions not modified in ``older_than_days`` days.

    Registry lines that point at a removed session are dropped afterwards.
    """
    cutoff = time.time() - older_than_days * 86400
    expired = [d for d in _session_dirs(base) if d.stat().st_mtime < cutoff]
    for d in expired:
        shutil.rmtree(d)
    if expired:
        _prune_registry((sessions_base or SESSIONS_BASE) / REGISTRY_FILENAME)
    return [str(d) for d in expired]


def _live_registry_line(line: str) -> bool:
    try:
        session = json.loads(line).get("session", "")
    except (json.JSONDecodeError, AttributeError):
        return False
    return bool(session) and os.path.isdir(session)


def _prune_registry(registry: Path) -> None:
    try:
        lines = registry.read_text().splitlines()
    except OSError:
        return
    kept = [line for line in lines if line.strip() and _live_registry_line(line)]
    try:
        registry.write_text("".join(line + "\n" for line in kept))
    except OSError:
        pass

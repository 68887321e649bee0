"""Final run report: per-step outcomes, terminal status, background notes."""

import os
from dataclasses import dataclass, field

from stepline.core.logging import atomic_write_file, write_json
from stepline.executor.engine.state import PipelineStatus, RunPhase, StepOutcome, StepRecord

SUMMARY_JSON = "run-summary.json"
SUMMARY_MD = "run-summary.md"


@dataclass
class RunReport:
    pipeline: str
    phase: RunPhase
    status: PipelineStatus
    exit_code: int
    records: list[StepRecord] = field(default_factory=list)
    cancelled: bool = False
    background_note: str = ""
    duration_s: float = 0.0
    session_dir: str = ""

    @property
    def succeeded(self) -> bool:
        return self.phase is RunPhase.SUCCEEDED

    def counts(self) -> dict[str, int]:
        counts = {o.value: 0 for o in (StepOutcome.SUCCEEDED, StepOutcome.FAILED,
                                       StepOutcome.SKIPPED, StepOutcome.TIMED_OUT)}
        for r in self.records:
            counts[r.outcome.value] = counts.get(r.outcome.value, 0) + 1
        return counts


def _record_to_dict(record: StepRecord) -> dict:
    d = {
        "index": record.index,
        "name": record.name,
        "phase": record.phase,
        "outcome": record.outcome.value,
    }
    if record.result is not None:
        d["exit_code"] = record.result.exit_code
        d["duration_s"] = round(record.result.duration_s, 3)
        d["retries"] = record.result.retries
    if record.reason:
        d["reason"] = record.reason
    if record.continue_on_error:
        d["continue_on_error"] = True
    failure = record.failure()
    if failure is not None:
        d["error"] = f"{type(failure).__name__}: {failure}"
    return d


def report_to_dict(report: RunReport) -> dict:
    return {
        "pipeline": report.pipeline,
        "phase": report.phase.value,
        "status": report.status.value,
        "exit_code": report.exit_code,
        "cancelled": report.cancelled,
        "duration_s": round(report.duration_s, 3),
        "counts": report.counts(),
        "steps": [_record_to_dict(r) for r in report.records],
        "notes": [report.background_note] if report.background_note else [],
    }


def format_markdown(report: RunReport) -> str:
    lines = [
        f"# Run summary: {report.pipeline}",
        "",
        f"- Result: {report.phase.value}" + (" (cancelled by deadline)" if report.cancelled else ""),
        f"- Exit code: {report.exit_code}",
        f"- Duration: {report.duration_s:.1f}s",
        "",
        "| # | Step | Phase | Outcome | Duration | Exit | Retries |",
        "|---:|---|---|---|---:|---:|---:|",
    ]
    for r in report.records:
        if r.result is not None:
            dur, code, retries = f"{r.result.duration_s:.1f}s", str(r.result.exit_code), str(r.result.retries)
        else:
            dur, code, retries = "-", "-", "-"
        outcome = r.outcome.value
        if r.reason:
            outcome += f" ({r.reason})"
        elif r.continue_on_error and r.outcome is not StepOutcome.SUCCEEDED:
            outcome += " (continue on error)"
        lines.append(f"| {r.index + 1} | {r.name} | {r.phase} | {outcome} | {dur} | {code} | {retries} |")
    if report.background_note:
        lines += ["", "## Notes", "", f"- Background task: {report.background_note}"]
    return "\n".join(lines) + "\n"


def write_report(session_dir: str, report: RunReport) -> tuple[str, str]:
    os.makedirs(session_dir, exist_ok=True)
    json_path = os.path.join(session_dir, SUMMARY_JSON)
    md_path = os.path.join(session_dir, SUMMARY_MD)
    write_json(json_path, report_to_dict(report))
    atomic_write_file(md_path, format_markdown(report))
    return json_path, md_path

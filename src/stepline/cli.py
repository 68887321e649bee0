# Copyright 2026. Unified CLI entry point for the stepline package.

import argparse
import json
import os
import signal
import sys
from pathlib import Path

from stepline.executor.engine.errors import PipelineConfigError

EXIT_CONFIG_ERROR = 2


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise PipelineConfigError(f"--var expects NAME=VALUE, got {pair!r}")
        out[name.strip()] = value
    return out


def _load(args):
    from stepline.executor.engine.registry import load_pipeline

    definition = load_pipeline(args.pipeline)
    definition.variables.update(_parse_vars(getattr(args, "var", None) or []))
    if getattr(args, "default_timeout", None):
        definition.default_timeout = args.default_timeout
    if getattr(args, "deadline", None):
        definition.deadline = args.deadline
    return definition


def _make_publisher(args):
    from stepline.executor.engine.publish import CommandPublisher, DirectoryPublisher

    if args.publish_command:
        return CommandPublisher(template=args.publish_command)
    if args.publish_root:
        return DirectoryPublisher(args.publish_root)
    return None


def cmd_run(args) -> int:
    from stepline.core.session import create_session
    from stepline.executor.driver import PipelineDriver, log_headline
    from stepline.executor.engine.facts import snapshot

    definition = _load(args)
    facts = snapshot(variables=definition.variables, secrets=definition.secrets)
    session_dir = args.session_dir or str(create_session(slug=definition.name))
    os.makedirs(session_dir, exist_ok=True)

    def _handle_signal(sig, frame):
        # Unwinds through the driver so the background task still gets drained.
        sys.exit(130 if sig == signal.SIGINT else 143)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    log_headline(f"Session: {session_dir}")
    driver = PipelineDriver(
        definition, facts,
        publisher=_make_publisher(args),
        session_dir=session_dir,
        cwd=args.cwd or os.getcwd(),
    )
    report = driver.run()
    return report.exit_code


def cmd_validate(args) -> int:
    from stepline.executor.engine.conditions import to_expression

    definition = _load(args)
    print(f"{definition.name}: {len(definition.steps)} steps, {len(definition.deploy)} deploy steps")
    for i, step in enumerate(definition.all_steps()):
        kind = "publish" if step.publish is not None else step.shell
        extras = []
        if step.continue_on_error:
            extras.append("continue-on-error")
        if step.retry is not None:
            extras.append(f"retry x{step.retry.attempts}")
        if step.timeout is not None:
            extras.append(f"timeout {step.timeout:.0f}s")
        line = f"  {i + 1:>2}. [{step.phase}] {step.name} ({kind}) if {to_expression(step.condition)}"
        if extras:
            line += f"  [{', '.join(extras)}]"
        print(line)
    if definition.background is not None:
        print(f"  background: {definition.background.command} > {definition.background.sink}")
    return 0


def cmd_facts(args) -> int:
    from stepline.executor.engine.facts import snapshot

    variables, secrets = {}, []
    if args.pipeline:
        definition = _load(args)
        variables, secrets = definition.variables, definition.secrets
    else:
        variables = _parse_vars(args.var or [])
    facts = snapshot(variables=variables, secrets=secrets)
    print(json.dumps({
        "variables": dict(sorted(facts.variables.items())),
        "secrets_present": sorted(facts.secret_names),
    }, indent=2))
    return 0


def cmd_clean(args) -> int:
    from stepline.core import session

    removed = session.cleanup_sessions(session.SESSIONS_BASE / session.RUNS_SUBSYSTEM,
                                       older_than_days=args.older_than)
    for path in removed:
        print(f"Removed {path}")
    print(f"{len(removed)} session(s) removed.")
    return 0


def cmd_report(args) -> int:
    from stepline.core import session
    from stepline.executor.report import SUMMARY_MD

    if args.session:
        session_dir = Path(args.session)
    else:
        session_dir = session.find_active_session(session.SESSIONS_BASE / session.RUNS_SUBSYSTEM)
    if session_dir is None or not (session_dir / SUMMARY_MD).is_file():
        print("No finished run found.", file=sys.stderr)
        return 1
    print((session_dir / SUMMARY_MD).read_text(), end="")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="stepline",
        description="Run declarative build pipelines step by step.",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run a pipeline file")
    run_parser.add_argument("pipeline", help="Pipeline file (.yml, .yaml or .json)")
    run_parser.add_argument("--deadline", type=float, help="Overall run deadline in seconds")
    run_parser.add_argument("--default-timeout", type=float, help="Per-step timeout in seconds")
    run_parser.add_argument("--var", action="append", default=[], metavar="NAME=VALUE",
                            help="Override a pipeline variable (repeatable)")
    run_parser.add_argument("--publish-root", help="Publish artifacts into this directory")
    run_parser.add_argument("--publish-command",
                            help="Publish with a command template ({local} {remote} {visibility})")
    run_parser.add_argument("--cwd", help="Working directory for steps (default: current)")
    run_parser.add_argument("--session-dir", help="Use this session directory instead of a new one")

    validate_parser = subparsers.add_parser("validate", help="Load a pipeline and list its steps")
    validate_parser.add_argument("pipeline")
    validate_parser.add_argument("--var", action="append", default=[], metavar="NAME=VALUE")

    facts_parser = subparsers.add_parser("facts", help="Show the environment facts a run would see")
    facts_parser.add_argument("pipeline", nargs="?")
    facts_parser.add_argument("--var", action="append", default=[], metavar="NAME=VALUE")

    status_parser = subparsers.add_parser("status", help="Show all run sessions")
    status_parser.add_argument("--active", action="store_true", help="Only show running sessions")
    status_parser.add_argument("--limit", type=int, default=20, help="Max sessions to show")

    clean_parser = subparsers.add_parser("clean", help="Remove old run sessions")
    clean_parser.add_argument("--older-than", type=int, default=30, metavar="DAYS")

    report_parser = subparsers.add_parser("report", help="Print the summary of the latest run")
    report_parser.add_argument("session", nargs="?", help="Session directory (default: latest)")

    sample_parser = subparsers.add_parser("sample-cpu", help="Print idle CPU samples as CSV")
    sample_parser.add_argument("--interval", type=float, default=5.0)
    sample_parser.add_argument("--count", type=int, default=0, help="Stop after N samples (0 = never)")

    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return cmd_run(args)
        elif args.command == "validate":
            return cmd_validate(args)
        elif args.command == "facts":
            return cmd_facts(args)
        elif args.command == "status":
            from stepline.core.events import cmd_status
            return cmd_status(args)
        elif args.command == "clean":
            return cmd_clean(args)
        elif args.command == "report":
            return cmd_report(args)
        elif args.command == "sample-cpu":
            from stepline.sampler import main as sampler_main
            return sampler_main(interval=args.interval, count=args.count)
    except PipelineConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

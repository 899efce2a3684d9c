"""
Command-line entry point.

Three commands::

    python -m loadgate run load --base-url http://localhost:5050 --out result.json
    python -m loadgate check result.json --strict
    python -m loadgate profiles

The process exit code is the single pass/fail signal for CI and follows
a three-state convention so that a pipeline can distinguish "thresholds
breached" from "the tool itself failed":

- ``0`` - every threshold passed
- ``1`` - a threshold was breached, the run was cancelled, a security
  finding is configured to fail, or (``--strict``) a threshold was
  indeterminate
- ``2`` - configuration or script error

Key Concepts Demonstrated:
- ``argparse`` sub-commands with environment-backed defaults
- Logging configured once at the entry point, report on stdout
- A top-level guard that maps unexpected errors to exit code 2
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import shlex
import sys
from collections.abc import Sequence
from pathlib import Path

from loadgate.config import get_config
from loadgate.definitions import load_definition
from loadgate.engine import EngineSettings, LoadTest
from loadgate.errors import ConfigurationError, ScannerError
from loadgate.report import InsightPolicy, render
from loadgate.result import EXIT_SCRIPT_ERROR, RunResult
from loadgate.scenarios import available_profiles, get_profile
from loadgate.security import CommandScanner, SecurityScanner, ZapReportScanner, load_rules, run_security_scan

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all sub-commands."""
    parser = argparse.ArgumentParser(
        prog="loadgate",
        description="Run staged HTTP load tests and gate CI on their thresholds.",
    )
    parser.add_argument(
        "--env",
        default=None,
        help="Configuration environment (development, testing, production); defaults to LOADGATE_ENV",
    )
    parser.add_argument("--log-level", default=None, help="Override LOADGATE_LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run a built-in test profile")
    run.add_argument("profile", help="Profile name (see 'loadgate profiles')")
    run.add_argument("--base-url", default=None, help="Target API root; defaults to LOADGATE_BASE_URL")
    run.add_argument("--format", choices=("text", "json"), default="text", help="Summary output format")
    run.add_argument("--out", type=Path, default=None, help="Write the run result as JSON to this path")
    run.add_argument("--thresholds", type=Path, default=None, help="YAML file with threshold/stage overrides")
    run.add_argument("--strict", action="store_true", help="Fail on indeterminate thresholds")
    run.add_argument("--duration-scale", type=float, default=None, help="Multiply every stage duration")
    run.add_argument("--seed", type=int, default=None, help="Seed for per-VU random selectors")
    run.add_argument("--zap-report", type=Path, default=None, help="Merge findings from a ZAP JSON report")
    run.add_argument(
        "--zap-command",
        default=None,
        help="Scanner command to run after the load test; {target} and {report} are substituted",
    )
    run.add_argument("--zap-rules", type=Path, default=None, help="ZAP baseline rules file (IGNORE/WARN/FAIL)")

    check = commands.add_parser("check", help="Re-gate a saved run result")
    check.add_argument("result", type=Path, help="Path to a result JSON written by 'run --out'")
    check.add_argument("--strict", action="store_true", help="Fail on indeterminate thresholds")
    check.add_argument("--format", choices=("text", "json"), default="text", help="Summary output format")

    commands.add_parser("profiles", help="List built-in test profiles")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def build_scanner(args: argparse.Namespace) -> SecurityScanner | None:
    """
    Build the post-run security scanner from CLI flags.

    Raises:
        ConfigurationError: If the flags are inconsistent or the rules
            file is unreadable.
    """
    if args.zap_report is None and args.zap_command is None:
        if args.zap_rules is not None:
            raise ConfigurationError("--zap-rules needs --zap-report or --zap-command")
        return None
    rules = load_rules(args.zap_rules) if args.zap_rules is not None else {}
    if args.zap_command is not None:
        report_path = args.zap_report or Path("zap-report.json")
        return CommandScanner(shlex.split(args.zap_command), report_path, rules)
    return ZapReportScanner(args.zap_report, rules)


def cmd_run(args: argparse.Namespace) -> int:
    config = get_config(args.env)
    settings = EngineSettings.from_config(config, base_url=args.base_url)
    definition = load_definition(get_profile(args.profile), args.thresholds)
    if args.duration_scale is not None:
        definition = definition.scaled(args.duration_scale)
    if args.seed is not None:
        definition = dataclasses.replace(definition, seed=args.seed)

    scanner = build_scanner(args)

    test = LoadTest(definition, settings=settings, strict=args.strict)
    result = test.run()
    if scanner is not None:
        result = run_security_scan(result, scanner, test.vu_settings.base_url)

    if args.out is not None:
        logger.info("Writing run result to %s", result.save(args.out))
    sys.stdout.write(render(result, args.format, definition.insight_policy))
    return result.exit_code


def cmd_check(args: argparse.Namespace) -> int:
    try:
        result = RunResult.load(args.result)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {args.result}: {exc}") from exc
    if args.strict:
        result = result.with_strict(True)
    policy = InsightPolicy.default() if result.name in ("stress", "breakpoint") else None
    sys.stdout.write(render(result, args.format, policy))
    return result.exit_code


def cmd_profiles(_args: argparse.Namespace) -> int:
    for name, description in available_profiles():
        sys.stdout.write(f"{name:<12}{description}\n")
    return 0


COMMANDS = {"run": cmd_run, "check": cmd_check, "profiles": cmd_profiles}


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point: parse arguments, configure logging and dispatch.

    Returns:
        The process exit code (0, 1 or 2).
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or get_config(args.env).LOG_LEVEL)
    try:
        return COMMANDS[args.command](args)
    except (ConfigurationError, ScannerError, ValueError) as exc:
        print(f"loadgate: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error")
        print(f"loadgate: unexpected error: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())

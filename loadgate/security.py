"""
Security scanner collaborator.

Vulnerability detection stays outside this package: a ZAP-style scanner
runs as a black box and leaves a JSON report behind.  This module only

- parses that report into :class:`Finding` records,
- applies a ZAP baseline rules file (``<rule id>\\t<IGNORE|INFO|WARN|FAIL>``)
  to decide which findings may fail the gate, and
- triggers a scan after a load run and merges its findings into a *new*
  :class:`~loadgate.result.RunResult`.

Key Concepts Demonstrated:
- ``subprocess.run`` with ``shell=False`` and a validated argument vector
- Tolerant parsing of a third-party JSON report
- Findings as values merged by copy, never by mutation
"""

from __future__ import annotations

import html
import json
import logging
import re
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from loadgate.errors import ConfigurationError, ScannerError

if TYPE_CHECKING:
    from loadgate.result import RunResult

logger = logging.getLogger(__name__)

# ZAP riskcode -> severity label.
_RISK_LABELS = {0: "Informational", 1: "Low", 2: "Medium", 3: "High"}
SEVERITY_ORDER = ("High", "Medium", "Low", "Informational")

# zap-baseline.py exits 0 (pass), 1 (FAIL rules hit) or 2 (WARN rules hit).
_SCANNER_OK_CODES = frozenset({0, 1, 2})

_TAG = re.compile(r"<[^>]+>")


class RuleAction(str, Enum):
    IGNORE = "IGNORE"
    INFO = "INFO"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass(frozen=True)
class Finding:
    """One alert reported by the scanner."""

    severity: str
    name: str
    url: str = ""
    param: str = ""
    description: str = ""
    rule_id: str = ""
    action: RuleAction = RuleAction.WARN

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "name": self.name,
            "url": self.url,
            "param": self.param,
            "description": self.description,
            "rule_id": self.rule_id,
            "action": self.action.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Finding:
        return cls(
            severity=data["severity"],
            name=data["name"],
            url=data.get("url", ""),
            param=data.get("param", ""),
            description=data.get("description", ""),
            rule_id=str(data.get("rule_id", "")),
            action=RuleAction(data.get("action", RuleAction.WARN.value)),
        )


def _plain_text(markup: str) -> str:
    return " ".join(html.unescape(_TAG.sub(" ", markup)).split())


def parse_zap_report(data: Mapping[str, Any]) -> list[Finding]:
    """
    Flatten a ZAP JSON report (``-J report.json``) into findings.

    Each alert instance becomes one finding; an alert without instances
    still yields one finding for the site.

    Raises:
        ScannerError: If the document does not look like a ZAP report.
    """
    sites = data.get("site") if isinstance(data, Mapping) else None
    if sites is None:
        raise ScannerError("Scanner report has no 'site' section")
    if isinstance(sites, Mapping):
        sites = [sites]

    findings: list[Finding] = []
    for site in sites:
        for alert in site.get("alerts", []):
            try:
                risk = int(alert.get("riskcode", 0))
            except (TypeError, ValueError):
                risk = 0
            base = {
                "severity": _RISK_LABELS.get(risk, "Informational"),
                "name": alert.get("name") or alert.get("alert") or "unnamed alert",
                "description": _plain_text(alert.get("desc", "")),
                "rule_id": str(alert.get("pluginid") or alert.get("alertRef") or ""),
            }
            instances = alert.get("instances") or [{"uri": site.get("@name", "")}]
            for instance in instances:
                findings.append(
                    Finding(url=instance.get("uri", ""), param=instance.get("param", ""), **base)
                )
    return findings


def load_rules(path: str | Path) -> dict[str, RuleAction]:
    """
    Read a ZAP baseline rules file.

    Lines are ``<rule id>\\t<action>\\t(<comment>)``; blank lines and lines
    starting with ``#`` are skipped.

    Raises:
        ConfigurationError: If the file cannot be read, or on an unknown
            action or a malformed line.
    """
    rules: dict[str, RuleAction] = {}
    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            lines = handle.readlines()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read rules file {path}: {exc}") from exc
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split("\t") if "\t" in line else line.split()
        if len(parts) < 2:
            raise ConfigurationError(f"{path}:{number}: expected '<rule id> <action>'")
        try:
            rules[parts[0].strip()] = RuleAction(parts[1].strip().upper())
        except ValueError:
            raise ConfigurationError(f"{path}:{number}: unknown action {parts[1]!r}") from None
    return rules


def apply_rules(
    findings: Iterable[Finding],
    rules: Mapping[str, RuleAction],
    default: RuleAction = RuleAction.WARN,
) -> list[Finding]:
    """Attach each finding's action and drop the ignored ones."""
    kept = []
    for finding in findings:
        action = rules.get(finding.rule_id, default)
        if action is RuleAction.IGNORE:
            continue
        kept.append(replace(finding, action=action))
    return kept


class SecurityScanner(Protocol):
    def scan(self, base_url: str) -> list[Finding]:
        ...


class ZapReportScanner:
    """
    Reads an already-produced ZAP JSON report.

    Args:
        report_path: Location of the JSON report.
        rules: Rule id -> action mapping (see :func:`load_rules`).
    """

    def __init__(self, report_path: str | Path, rules: Mapping[str, RuleAction] | None = None):
        self.report_path = Path(report_path)
        self.rules = dict(rules or {})

    def scan(self, base_url: str) -> list[Finding]:
        try:
            with self.report_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            raise ScannerError(f"Cannot read scanner report {self.report_path}: {exc}") from exc
        findings = apply_rules(parse_zap_report(data), self.rules)
        logger.info("Loaded %d security findings for %s from %s", len(findings), base_url, self.report_path)
        return findings


class CommandScanner(ZapReportScanner):
    """
    Runs a scanner command, then reads the report it wrote.

    ``{target}`` and ``{report}`` placeholders in *command* are replaced
    with the base URL and report path.  The command is never run through
    a shell.
    """

    def __init__(
        self,
        command: Sequence[str],
        report_path: str | Path,
        rules: Mapping[str, RuleAction] | None = None,
        timeout: float | None = 600.0,
    ):
        super().__init__(report_path, rules)
        if not command or not all(isinstance(part, str) and part for part in command):
            raise ConfigurationError("Scanner command must be a non-empty list of non-empty strings")
        self.command = tuple(command)
        self.timeout = timeout

    def build_command(self, base_url: str) -> list[str]:
        return [
            part.replace("{target}", base_url).replace("{report}", str(self.report_path))
            for part in self.command
        ]

    def scan(self, base_url: str) -> list[Finding]:
        args = self.build_command(base_url)
        try:
            self.report_path.unlink(missing_ok=True)
        except OSError as exc:
            raise ScannerError(f"Could not clear previous scan report {self.report_path}: {exc}") from exc
        logger.info("Running security scan: %s", " ".join(args))
        try:
            completed = subprocess.run(
                args,
                shell=False,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ScannerError(f"Security scanner could not run: {exc}") from exc
        if completed.returncode not in _SCANNER_OK_CODES:
            raise ScannerError(
                f"Security scanner exited with {completed.returncode}: {completed.stderr.strip()[:500]}"
            )
        return super().scan(base_url)


def run_security_scan(result: RunResult, scanner: SecurityScanner, base_url: str) -> RunResult:
    """
    Post-run trigger: scan *base_url* and merge findings into a new result.

    A scanner that fails is logged and noted as a warning on the result;
    it never turns a finished load run into a crash.
    """
    try:
        findings = scanner.scan(base_url)
    except ScannerError as exc:
        logger.error("Security scan failed: %s", exc)
        return result.with_warnings([f"security scan failed: {exc}"])
    return result.with_findings(findings)


def group_by_severity(findings: Iterable[Finding]) -> dict[str, list[Finding]]:
    grouped: dict[str, list[Finding]] = {severity: [] for severity in SEVERITY_ORDER}
    for finding in findings:
        grouped.setdefault(finding.severity, []).append(finding)
    return {severity: items for severity, items in grouped.items() if items}

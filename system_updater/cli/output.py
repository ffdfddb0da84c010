"""
Output formatting utilities for the CLI.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import sys
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from colorama import init, Fore, Style

from ..context import OutputSink
from ..models import (
    ActionOutcome, Decision, DecisionStatus, RunReport, RunReportEntry, Target
)

# Initialize colorama for cross-platform color support
init()

STATUS_LABELS: Dict[DecisionStatus, str] = {
    DecisionStatus.UP_TO_DATE: "up to date",
    DecisionStatus.UPDATE_AVAILABLE: "update available",
    DecisionStatus.SECURITY_UPDATE_AVAILABLE: "security update",
    DecisionStatus.ABSENT: "not installed",
    DecisionStatus.PROBE_FAILED: "check failed",
}


class OutputFormatter:
    """Handles output formatting for the CLI."""

    def __init__(self, use_color: bool = True, json_output: bool = False, quiet: bool = False):
        """
        Initialize output formatter.

        Args:
            use_color: Whether to use ANSI colors
            json_output: Whether to output JSON
            quiet: Only print errors
        """
        self.use_color = use_color
        self.json_output = json_output
        self.quiet = quiet

        # Color shortcuts
        self.green = Fore.GREEN if use_color else ''
        self.yellow = Fore.YELLOW if use_color else ''
        self.red = Fore.RED if use_color else ''
        self.cyan = Fore.CYAN if use_color else ''
        self.white = Fore.WHITE if use_color else ''
        self.reset = Style.RESET_ALL if use_color else ''
        self.bright = Style.BRIGHT if use_color else ''

    @property
    def silent(self) -> bool:
        """True when human-readable output is suppressed."""
        return self.json_output or self.quiet

    def success(self, message: str) -> None:
        """Print success message."""
        if not self.silent:
            print(f"{self.green}✅ {message}{self.reset}")

    def warning(self, message: str) -> None:
        """Print warning message."""
        if not self.silent:
            print(f"{self.yellow}⚠️  {message}{self.reset}", file=sys.stderr)

    def error(self, message: str) -> None:
        """Print error message (shown even in quiet mode)."""
        if not self.json_output:
            print(f"{self.red}❌ {message}{self.reset}", file=sys.stderr)

    def info(self, message: str) -> None:
        """Print info message."""
        if not self.silent:
            print(f"{self.cyan}ℹ️  {message}{self.reset}")

    def header(self, message: str) -> None:
        """Print header message."""
        if not self.silent:
            print(f"\n{self.cyan}{self.bright}{message}{self.reset}")
            print(f"{self.cyan}{'─' * len(message)}{self.reset}")

    def status_color(self, status: Optional[DecisionStatus]) -> str:
        """Color used for a decision status."""
        if status == DecisionStatus.UP_TO_DATE:
            return self.green
        if status == DecisionStatus.UPDATE_AVAILABLE:
            return self.yellow
        if status in (DecisionStatus.SECURITY_UPDATE_AVAILABLE, DecisionStatus.PROBE_FAILED):
            return self.red
        return self.white

    @staticmethod
    def entry_result(entry: RunReportEntry) -> str:
        """Short text describing what happened to a target after the decision."""
        if entry.action is not None:
            if not entry.action.success:
                return "update failed"
            if entry.verified is False:
                return "updated, still outdated"
            if entry.verified is None:
                return "updated"
            return "updated, verified"
        if entry.skipped:
            return f"skipped ({entry.skipped})"
        return ""

    def format_decision_table(self, entries: List[RunReportEntry]) -> str:
        """
        Format the report entries as a table.

        Args:
            entries: Report entries in run order

        Returns:
            Formatted table string
        """
        if not entries:
            return "No targets"

        rows = []
        for entry in entries:
            decision = entry.decision
            status = STATUS_LABELS[decision.status] if decision else "-"
            rows.append((
                entry.display_name,
                (decision.installed if decision else None) or "-",
                (decision.latest if decision else None) or "-",
                status,
                self.entry_result(entry),
                entry.status,
            ))

        max_name = max(max(len(r[0]) for r in rows), 10)
        max_installed = max(max(len(r[1]) for r in rows), 12)
        max_latest = max(max(len(r[2]) for r in rows), 12)
        max_status = max(max(len(r[3]) for r in rows), 6)

        lines = []
        lines.append(f"  {'Target':<{max_name}}  {'Installed':<{max_installed}}  "
                     f"{'Latest':<{max_latest}}  {'Status':<{max_status}}  Result")
        lines.append(f"  {'─' * max_name}  {'─' * max_installed}  {'─' * max_latest}  "
                     f"{'─' * max_status}  {'─' * 6}")

        for name, installed, latest, status, result, status_value in rows:
            color = self.status_color(status_value)
            lines.append(f"  {self.white}{name:<{max_name}}{self.reset}  {installed:<{max_installed}}  "
                         f"{latest:<{max_latest}}  {color}{status:<{max_status}}{self.reset}  {result}".rstrip())

        return '\n'.join(lines)

    def format_failures(self, report: RunReport) -> str:
        """
        Format per-target failure details.

        Returns:
            One line per failed probe, failed action, failed verification
            or package integrity problem
        """
        lines = []
        for entry in report.entries:
            if entry.probe_failed and entry.decision and entry.decision.failure:
                lines.append(f"  {self.red}{entry.target_id}{self.reset}: {entry.decision.failure}")
            if entry.action_failed:
                lines.append(f"  {self.red}{entry.target_id}{self.reset}: update failed: {entry.action.message}")
            if entry.verified is False:
                lines.append(f"  {self.red}{entry.target_id}{self.reset}: "
                             f"still reports an update after a successful action")
            if entry.decision and entry.decision.integrity_issues:
                issues = entry.decision.integrity_issues
                lines.append(f"  {self.red}{entry.target_id}{self.reset}: "
                             f"{len(issues)} broken or half-configured package(s): {', '.join(issues[:5])}")
        return '\n'.join(lines)

    def format_summary(self, report: RunReport) -> str:
        """Format the rollup summary line."""
        checked = sum(1 for e in report.entries if e.decision is not None)
        parts = [f"{checked} checked"]
        if report.updated:
            parts.append(f"{self.green}{len(report.updated)} updated{self.reset}")
        if report.pending:
            parts.append(f"{self.yellow}{len(report.pending)} pending{self.reset}")
        failed = (len(report.probe_failures) + len(report.action_failures)
                  + len(report.verification_failures) + len(report.integrity_failures))
        if failed:
            parts.append(f"{self.red}{failed} failed{self.reset}")
        skipped = sum(1 for e in report.entries if e.decision is None and e.skipped)
        if skipped:
            parts.append(f"{skipped} skipped")
        summary = ", ".join(parts)
        if report.interrupted:
            summary += f" {self.yellow}(interrupted){self.reset}"
        return summary

    def format_targets_table(self, targets: List[Target]) -> str:
        """
        Format registered targets as a table.

        Args:
            targets: Targets in registry order

        Returns:
            Formatted table string
        """
        if not targets:
            return "No targets registered"

        max_id = max(max(len(t.id) for t in targets), 10)
        max_source = max(max(len(t.source.label) for t in targets), 10)

        lines = []
        lines.append(f"  {'Target':<{max_id}}  {'Source':<{max_source}}  {'Action':<16}  Enabled")
        lines.append(f"  {'─' * max_id}  {'─' * max_source}  {'─' * 16}  {'─' * 7}")
        for target in targets:
            action = target.update_action.kind if target.update_action else "-"
            enabled = f"{self.green}yes{self.reset}" if target.enabled else f"{self.yellow}no{self.reset}"
            lines.append(f"  {target.id:<{max_id}}  {target.source.label:<{max_source}}  {action:<16}  {enabled}")
        return '\n'.join(lines)

    def format_history_table(self, entries: List[Dict[str, Any]]) -> str:
        """
        Format update history entries as a table.

        Args:
            entries: List of history entry dictionaries

        Returns:
            Formatted table string
        """
        if not entries:
            return "No update history"

        lines = []

        # Header
        header = f"  {'Date/Time':<20}  {'Target':<24}  {'Version':<24}  {'Result':<8}  {'Duration':<10}"
        lines.append(header)
        lines.append(f"  {'─' * 20}  {'─' * 24}  {'─' * 24}  {'─' * 8}  {'─' * 10}")

        # Rows
        for entry in entries:
            timestamp = entry.get('timestamp', '')
            if timestamp:
                try:
                    date_str = datetime.fromisoformat(timestamp).strftime('%Y-%m-%d %H:%M:%S')
                except ValueError:
                    date_str = timestamp[:19]
            else:
                date_str = 'unknown'

            target = entry.get('target_id', '')
            if len(target) > 24:
                target = target[:21] + '...'

            version = f"{entry.get('installed') or '?'} -> {entry.get('latest') or '?'}"
            if len(version) > 24:
                version = version[:21] + '...'

            succeeded = entry.get('succeeded', False)
            result_str = "Pass" if succeeded else "Fail"
            color = self.green if succeeded else self.red

            duration = entry.get('duration_sec', 0) or 0
            duration_str = f"{duration:.1f}s"

            lines.append(f"  {date_str:<20}  {target:<24}  {version:<24}  "
                         f"{color}{result_str:<8}{self.reset}  {duration_str:<10}")

        return '\n'.join(lines)

    def output_json(self, data: Any) -> None:
        """
        Output data as JSON.

        Args:
            data: Data to output
        """
        print(json.dumps(data, indent=2, default=str))


class ConsoleSink(OutputSink):
    """Prints orchestrator progress and asks for confirmation on the terminal."""

    def __init__(self, formatter: OutputFormatter,
                 input_func: Callable[[str], str] = input) -> None:
        """
        Initialize the sink.

        Args:
            formatter: Formatter used for all output
            input_func: Reads the answer to a confirmation prompt
        """
        self.formatter = formatter
        self.input_func = input_func

    def target_started(self, target: Target) -> None:
        if not self.formatter.silent:
            print(f"{self.formatter.cyan}→{self.formatter.reset} Checking {target.display_name}...")

    def decision_made(self, target: Target, decision: Decision) -> None:
        if self.formatter.silent:
            return
        f = self.formatter
        label = STATUS_LABELS[decision.status]
        color = f.status_color(decision.status)
        if decision.wants_update:
            detail = f"{decision.installed or '-'} -> {decision.latest}"
        elif decision.status == DecisionStatus.UP_TO_DATE:
            detail = decision.installed or ""
        elif decision.status == DecisionStatus.PROBE_FAILED and decision.failure:
            detail = decision.failure.message
        else:
            detail = ""
        suffix = f" ({detail})" if detail else ""
        print(f"  {color}{label}{f.reset}{suffix}")
        for package in decision.packages[:10]:
            print(f"    {package}")
        if len(decision.packages) > 10:
            print(f"    ... and {len(decision.packages) - 10} more")

    def action_started(self, target: Target, decision: Decision) -> None:
        self.formatter.info(f"Updating {target.display_name}")

    def action_finished(self, target: Target, outcome: ActionOutcome) -> None:
        if outcome.success:
            self.formatter.success(f"{target.display_name} updated ({outcome.duration_sec:.1f}s)")
        else:
            self.formatter.error(f"{target.display_name}: {outcome.message}")

    def target_skipped(self, target: Target, reason: str) -> None:
        if not self.formatter.silent:
            print(f"  {target.display_name}: skipped ({reason})")

    def confirm(self, target: Target, decision: Decision) -> bool:
        version = f" to {decision.latest}" if decision.latest else ""
        prompt = f"Update {target.display_name}{version}? [y/N] "
        try:
            if self.formatter.json_output:
                # Keep stdout clean for the JSON document
                sys.stderr.write(prompt)
                sys.stderr.flush()
                answer = self.input_func("")
            else:
                answer = self.input_func(prompt)
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

"""
Orchestrator: walks the targets in order, decides, confirms and updates.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .actions import UpdateAction, create_action
from .constants import ExitCode
from .context import RunContext
from .engine import UpdateDecisionEngine
from .exceptions import ConfigurationError, InsufficientPrivilegeError
from .models import (
    ActionOutcome, ActionReference, ConfirmationPolicy, Decision, DecisionStatus,
    ProbeFailureKind, RunReport, RunReportEntry, Target
)
from .utils.interrupt import InterruptGuard
from .utils.logger import get_logger
from .utils.update_history import UpdateHistoryEntry, UpdateHistoryManager

logger = get_logger(__name__)

ActionFactory = Callable[[ActionReference, RunContext], UpdateAction]

# Reasons recorded in RunReportEntry.skipped
SKIP_DISABLED = "disabled"
SKIP_NO_ACTION = "no-action"
SKIP_DRY_RUN = "dry-run"
SKIP_DECLINED = "declined"
SKIP_INTERRUPTED = "interrupted"


class Orchestrator:
    """Processes targets sequentially; one target's failure never stops the run."""

    def __init__(self, context: RunContext,
                 engine: Optional[UpdateDecisionEngine] = None,
                 action_factory: ActionFactory = create_action,
                 history: Optional[UpdateHistoryManager] = None,
                 interrupt: Optional[InterruptGuard] = None) -> None:
        """
        Initialize the orchestrator.

        Args:
            context: Run context
            engine: Decision engine (built from the context if omitted)
            action_factory: Builds an action for a reference
            history: Where to record actions, if history is enabled
            interrupt: Interruption flag checked between steps
        """
        self.context = context
        self.engine = engine or UpdateDecisionEngine(context)
        self.action_factory = action_factory
        self.history = history
        self.interrupt = interrupt or InterruptGuard()

    def preflight(self, targets: Sequence[Target], policy: Optional[ConfirmationPolicy] = None) -> None:
        """
        Check that the run can do what it may be asked to do.

        Raises:
            InsufficientPrivilegeError: If an enabled target's action needs
                root and neither root nor sudo is available
        """
        policy = policy or self.context.policy
        if policy == ConfirmationPolicy.DRY_RUN:
            return

        privileged = []
        for target in targets:
            if not target.enabled or target.update_action is None:
                continue
            try:
                action = self.action_factory(target.update_action, self.context)
            except ConfigurationError:
                continue
            if action.requires_privilege:
                privileged.append(target.id)

        if privileged and self.context.runner.privilege_prefix() is None:
            raise InsufficientPrivilegeError(
                f"Updating {', '.join(privileged)} requires root privileges and sudo is not available"
            )

    def run(self, targets: Sequence[Target], policy: Optional[ConfirmationPolicy] = None) -> RunReport:
        """
        Process every target in order.

        Args:
            targets: Targets in registry order
            policy: Confirmation policy (defaults to the context's)

        Returns:
            Report with one entry per target, in order
        """
        policy = policy or self.context.policy
        report = RunReport(policy=policy)
        logger.info(f"Checking {len(targets)} targets (policy: {policy.value})")

        for index, target in enumerate(targets):
            if self.interrupt.interrupted:
                logger.warning(f"Interrupted, skipping {len(targets) - index} remaining targets")
                for remaining in targets[index:]:
                    report.entries.append(RunReportEntry(remaining.id, remaining.display_name,
                                                         skipped=SKIP_INTERRUPTED))
                    self.context.sink.target_skipped(remaining, SKIP_INTERRUPTED)
                break
            report.entries.append(self._process(target, policy))

        report.interrupted = self.interrupt.interrupted
        report.finished_at = datetime.now()
        return report

    def _process(self, target: Target, policy: ConfirmationPolicy) -> RunReportEntry:
        entry = RunReportEntry(target.id, target.display_name)
        sink = self.context.sink

        if not target.enabled:
            entry.skipped = SKIP_DISABLED
            sink.target_skipped(target, SKIP_DISABLED)
            return entry

        sink.target_started(target)
        decision = self.engine.decide(target)
        entry.decision = decision
        sink.decision_made(target, decision)

        if decision.status == DecisionStatus.PROBE_FAILED:
            logger.warning(f"{target.id}: {decision.failure}")
        if not decision.wants_update:
            return entry

        if target.update_action is None:
            entry.skipped = SKIP_NO_ACTION
        elif policy == ConfirmationPolicy.DRY_RUN:
            entry.skipped = SKIP_DRY_RUN
        elif self.interrupt.interrupted:
            entry.skipped = SKIP_INTERRUPTED
        elif policy == ConfirmationPolicy.ALWAYS_PROMPT and not sink.confirm(target, decision):
            entry.skipped = SKIP_DECLINED
        if entry.skipped:
            sink.target_skipped(target, entry.skipped)
            return entry

        # Re-check after the prompt: the user may have pressed Ctrl+C while answering
        if self.interrupt.interrupted:
            entry.skipped = SKIP_INTERRUPTED
            sink.target_skipped(target, SKIP_INTERRUPTED)
            return entry

        entry.action = self._invoke(target, decision)
        if entry.action.success and self.context.verify_after_update:
            entry.verified = self._verify(target)
        self._record_history(target, decision, entry.action, entry.verified)
        return entry

    def _invoke(self, target: Target, decision: Decision) -> ActionOutcome:
        try:
            action = self.action_factory(target.update_action, self.context)
        except ConfigurationError as e:
            outcome = ActionOutcome(success=False, message=str(e))
        else:
            self.context.sink.action_started(target, decision)
            try:
                outcome = action.invoke(target, decision)
            except Exception as e:
                logger.error(f"Update action for {target.id} raised: {e}", exc_info=True)
                outcome = ActionOutcome(success=False, message=f"action error: {e}")

        if outcome.success:
            logger.info(f"Updated {target.id} in {outcome.duration_sec:.1f}s")
        else:
            logger.error(f"Update of {target.id} failed: {outcome.message}")
        self.context.sink.action_finished(target, outcome)
        return outcome

    def _verify(self, target: Target) -> Optional[bool]:
        """Re-probe after a successful action; None when the re-probe itself failed."""
        after = self.engine.decide(target)
        if after.status == DecisionStatus.UP_TO_DATE:
            return True
        if after.status == DecisionStatus.PROBE_FAILED:
            logger.warning(f"Could not verify {target.id}: {after.failure}")
            return None
        logger.warning(f"{target.id} still reports {after.status.value} after updating")
        return False

    def _record_history(self, target: Target, decision: Decision, outcome: ActionOutcome,
                        verified: Optional[bool]) -> None:
        if self.history is None:
            return
        self.history.add(UpdateHistoryEntry(
            timestamp=datetime.now(),
            target_id=target.id,
            succeeded=outcome.success,
            exit_code=outcome.exit_code,
            duration_sec=outcome.duration_sec,
            installed=decision.installed,
            latest=decision.latest,
            verified=verified,
        ))


def exit_code_for(report: RunReport) -> ExitCode:
    """
    Map a run report onto the process exit code taxonomy.

    The most severe condition wins: interruption, then failed actions, then
    failed verification or broken packages, then probe failures by kind.
    """
    if report.interrupted:
        return ExitCode.GENERAL
    if report.action_failures:
        return ExitCode.PACKAGE_MANAGER_ERROR
    if report.verification_failures or report.integrity_failures:
        return ExitCode.INTEGRITY_ISSUE

    kinds: List[ProbeFailureKind] = [
        e.decision.failure.kind for e in report.probe_failures
        if e.decision is not None and e.decision.failure is not None
    ]
    if ProbeFailureKind.NETWORK_ERROR in kinds or ProbeFailureKind.RATE_LIMITED in kinds:
        return ExitCode.NETWORK_FAILURE
    if ProbeFailureKind.PARSE_ERROR in kinds:
        return ExitCode.INTEGRITY_ISSUE
    if ProbeFailureKind.NOT_FOUND in kinds:
        return ExitCode.GENERAL
    return ExitCode.SUCCESS

"""
Tests for the orchestrator and the exit code mapping.
"""

import pytest

from system_updater.constants import ExitCode
from system_updater.exceptions import InsufficientPrivilegeError
from system_updater.models import (
    ActionOutcome, ActionReference, ConfirmationPolicy, Decision, DecisionStatus,
    ProbeFailure, ProbeFailureKind, RunReport, RunReportEntry
)
from system_updater.orchestrator import (
    SKIP_DECLINED, SKIP_DISABLED, SKIP_DRY_RUN, SKIP_INTERRUPTED, SKIP_NO_ACTION,
    Orchestrator, exit_code_for
)
from system_updater.utils.interrupt import InterruptGuard
from system_updater.utils.update_history import UpdateHistoryManager

from conftest import FakeCommandRunner, RecordingSink, make_context, make_target


def update(target_id, installed="1.0", latest="2.0"):
    return Decision(target_id, DecisionStatus.UPDATE_AVAILABLE, installed=installed, latest=latest)


def up_to_date(target_id):
    return Decision(target_id, DecisionStatus.UP_TO_DATE, installed="2.0", latest="2.0")


def failed(target_id, kind=ProbeFailureKind.NETWORK_ERROR):
    return Decision(target_id, DecisionStatus.PROBE_FAILED,
                    failure=ProbeFailure(kind, "boom", "github:example/x"))


class StubEngine:
    """Engine answering from a per-target list of decisions; the last one repeats."""

    def __init__(self, decisions):
        self.decisions = {key: list(value) for key, value in decisions.items()}
        self.calls = []

    def decide(self, target):
        self.calls.append(target.id)
        queue = self.decisions[target.id]
        return queue.pop(0) if len(queue) > 1 else queue[0]


class StubAction:
    """Action returning (or raising) a scripted outcome."""

    def __init__(self, outcome, on_invoke=None, requires_privilege=False):
        self.outcome = outcome
        self.on_invoke = on_invoke
        self.requires_privilege = requires_privilege
        self.invoked = []

    def invoke(self, target, decision):
        self.invoked.append(target.id)
        if self.on_invoke:
            self.on_invoke()
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def orchestrator(decisions, outcomes=None, answers=(), policy=ConfirmationPolicy.ALWAYS_YES,
                 runner=None, history=None, interrupt=None, on_invoke=None,
                 verify_after_update=False, privileged=False):
    """Build an orchestrator wired to stubs; returns (orchestrator, sink, actions)."""
    sink = RecordingSink(answers)
    context = make_context(runner or FakeCommandRunner(), policy=policy, sink=sink,
                           verify_after_update=verify_after_update)
    outcomes = outcomes or {}
    actions = {}

    def action_factory(reference, ctx):
        target_id = reference.params["command"][0]
        if target_id not in actions:
            outcome = outcomes.get(target_id, ActionOutcome(success=True, message="completed", exit_code=0))
            actions[target_id] = StubAction(outcome, on_invoke, requires_privilege=privileged)
        return actions[target_id]

    orch = Orchestrator(context, engine=StubEngine(decisions), action_factory=action_factory,
                        history=history, interrupt=interrupt or InterruptGuard())
    return orch, sink, actions


def target(target_id, **kwargs):
    kwargs.setdefault("action", ActionReference("command", {"command": [target_id]}))
    return make_target(target_id, **kwargs)


class TestRun:
    """Test the per-target flow."""

    def test_one_entry_per_target_in_order(self):
        targets = [target("a"), target("b"), target("c")]
        orch, _, _ = orchestrator({"a": [up_to_date("a")], "b": [update("b")], "c": [failed("c")]})

        report = orch.run(targets)

        assert [e.target_id for e in report.entries] == ["a", "b", "c"]
        assert [e.status for e in report.entries] == [
            DecisionStatus.UP_TO_DATE, DecisionStatus.UPDATE_AVAILABLE, DecisionStatus.PROBE_FAILED
        ]
        assert report.finished_at is not None
        assert not report.interrupted

    def test_failure_does_not_stop_the_run(self):
        targets = [target("a"), target("b"), target("c")]
        orch, _, actions = orchestrator(
            {"a": [update("a")], "b": [failed("b")], "c": [update("c")]},
            outcomes={"a": ActionOutcome(success=False, message="a exited with 1", exit_code=1)},
        )

        report = orch.run(targets)

        assert report.entries[0].action_failed
        assert report.entries[1].probe_failed
        assert report.entries[2].action.success
        assert actions["c"].invoked == ["c"]

    def test_action_raising_os_error_does_not_stop_the_run(self):
        targets = [target("a"), target("b")]
        orch, sink, actions = orchestrator(
            {"a": [update("a")], "b": [update("b")]},
            outcomes={"a": OSError(8, "Exec format error")},
        )

        report = orch.run(targets)

        assert report.entries[0].action_failed
        assert "Exec format error" in report.entries[0].action.message
        assert report.entries[1].action.success
        assert actions["b"].invoked == ["b"]
        assert exit_code_for(report) == ExitCode.PACKAGE_MANAGER_ERROR

    def test_disabled_target_is_not_evaluated(self):
        orch, sink, _ = orchestrator({"a": [update("a")]})
        report = orch.run([target("a", enabled=False)])

        assert report.entries[0].skipped == SKIP_DISABLED
        assert report.entries[0].decision is None
        assert orch.engine.calls == []
        assert sink.events == [("skipped", "a", SKIP_DISABLED)]

    def test_no_action_for_up_to_date(self):
        orch, sink, actions = orchestrator({"a": [up_to_date("a")]})
        report = orch.run([target("a")])

        assert report.entries[0].action is None
        assert report.entries[0].skipped is None
        assert actions == {}

    def test_update_without_action_reference(self):
        orch, _, _ = orchestrator({"a": [update("a")]})
        report = orch.run([make_target("a")])
        assert report.entries[0].skipped == SKIP_NO_ACTION
        assert report.pending == report.entries

    def test_dry_run_never_invokes(self):
        orch, sink, actions = orchestrator({"a": [update("a")]}, policy=ConfirmationPolicy.DRY_RUN)
        report = orch.run([target("a")])

        assert report.entries[0].skipped == SKIP_DRY_RUN
        assert actions == {}
        assert ("confirm", "a") not in sink.events

    def test_policy_argument_overrides_context(self):
        orch, _, actions = orchestrator({"a": [update("a")]})
        report = orch.run([target("a")], policy=ConfirmationPolicy.DRY_RUN)
        assert report.policy == ConfirmationPolicy.DRY_RUN
        assert actions == {}

    def test_prompt_accepted(self):
        orch, sink, actions = orchestrator({"a": [update("a")]}, answers=[True],
                                           policy=ConfirmationPolicy.ALWAYS_PROMPT)
        report = orch.run([target("a")])

        assert report.entries[0].action.success
        assert sink.events == [
            ("started", "a"),
            ("decision", "a", DecisionStatus.UPDATE_AVAILABLE),
            ("confirm", "a"),
            ("action_started", "a"),
            ("action_finished", "a", True),
        ]

    def test_prompt_declined(self):
        orch, _, actions = orchestrator({"a": [update("a")], "b": [update("b")]}, answers=[False, True],
                                        policy=ConfirmationPolicy.ALWAYS_PROMPT)
        report = orch.run([target("a"), target("b")])

        assert report.entries[0].skipped == SKIP_DECLINED
        assert report.entries[1].action.success
        assert "a" not in actions

    def test_security_update_is_acted_on(self):
        decision = Decision("a", DecisionStatus.SECURITY_UPDATE_AVAILABLE, installed="1", latest="2")
        orch, _, actions = orchestrator({"a": [decision]})
        orch.run([target("a")])
        assert actions["a"].invoked == ["a"]

    def test_absent_target_is_left_alone(self):
        orch, _, actions = orchestrator({"a": [Decision("a", DecisionStatus.ABSENT)]})
        report = orch.run([target("a")])
        assert report.entries[0].status == DecisionStatus.ABSENT
        assert actions == {}


class TestInterruption:
    """Test cooperative interruption."""

    def test_interrupt_during_action_stops_after_it(self):
        guard = InterruptGuard()
        orch, sink, actions = orchestrator(
            {"a": [update("a")], "b": [update("b")], "c": [update("c")]},
            interrupt=guard, on_invoke=guard.request,
        )

        report = orch.run([target("a"), target("b"), target("c")])

        assert report.interrupted
        assert report.entries[0].action.success
        assert [e.skipped for e in report.entries[1:]] == [SKIP_INTERRUPTED, SKIP_INTERRUPTED]
        assert list(actions) == ["a"]
        assert orch.engine.calls == ["a"]
        assert exit_code_for(report) == ExitCode.GENERAL

    def test_interrupt_while_prompting(self):
        guard = InterruptGuard()

        class InterruptingSink(RecordingSink):
            def confirm(self, target, decision):
                guard.request()
                return True

        sink = InterruptingSink()
        context = make_context(policy=ConfirmationPolicy.ALWAYS_PROMPT, sink=sink)
        action = StubAction(ActionOutcome(True))
        orch = Orchestrator(context, engine=StubEngine({"a": [update("a")], "b": [update("b")]}),
                            action_factory=lambda ref, ctx: action,
                            interrupt=guard)

        report = orch.run([target("a"), target("b")])

        assert report.entries[0].skipped == SKIP_INTERRUPTED
        assert report.entries[0].action is None
        assert report.entries[1].skipped == SKIP_INTERRUPTED
        assert action.invoked == []

    def test_interrupted_before_start(self):
        guard = InterruptGuard()
        guard.request()
        orch, _, _ = orchestrator({"a": [update("a")]}, interrupt=guard)
        report = orch.run([target("a")])
        assert report.entries[0].skipped == SKIP_INTERRUPTED
        assert orch.engine.calls == []


class TestVerification:
    """Test the post-update re-probe."""

    def test_verified(self):
        orch, _, _ = orchestrator({"a": [update("a"), up_to_date("a")]}, verify_after_update=True)
        report = orch.run([target("a")])

        assert report.entries[0].verified is True
        assert orch.engine.calls == ["a", "a"]
        assert exit_code_for(report) == ExitCode.SUCCESS

    def test_still_outdated(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, verify_after_update=True)
        report = orch.run([target("a")])

        assert report.entries[0].verified is False
        assert report.verification_failures == report.entries
        assert exit_code_for(report) == ExitCode.INTEGRITY_ISSUE

    def test_reprobe_failure_is_inconclusive(self):
        orch, _, _ = orchestrator({"a": [update("a"), failed("a")]}, verify_after_update=True)
        report = orch.run([target("a")])
        assert report.entries[0].verified is None

    def test_failed_action_is_not_verified(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, verify_after_update=True,
                                  outcomes={"a": ActionOutcome(success=False, exit_code=1)})
        report = orch.run([target("a")])
        assert report.entries[0].verified is None
        assert orch.engine.calls == ["a"]

    def test_verification_disabled(self):
        orch, _, _ = orchestrator({"a": [update("a")]})
        report = orch.run([target("a")])
        assert report.entries[0].verified is None
        assert orch.engine.calls == ["a"]


class TestHistory:
    """Test that actions are recorded."""

    def test_actions_are_recorded(self, tmp_path):
        history = UpdateHistoryManager(path=tmp_path / "history.json")
        orch, _, _ = orchestrator(
            {"a": [update("a", "1.0", "2.0")], "b": [update("b")], "c": [up_to_date("c")]},
            outcomes={"b": ActionOutcome(success=False, message="b exited with 2", exit_code=2)},
            history=history,
        )

        orch.run([target("a"), target("b"), target("c")])

        entries = {e.target_id: e for e in history.all()}
        assert set(entries) == {"a", "b"}
        assert entries["a"].succeeded
        assert (entries["a"].installed, entries["a"].latest) == ("1.0", "2.0")
        assert not entries["b"].succeeded
        assert entries["b"].exit_code == 2


class TestPreflight:
    """Test the privilege check done before the run."""

    def test_privileged_action_without_sudo(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, privileged=True)
        with pytest.raises(InsufficientPrivilegeError, match="a"):
            orch.preflight([target("a")])

    def test_privileged_action_with_sudo(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, privileged=True,
                                  runner=FakeCommandRunner(available=["sudo"]))
        orch.preflight([target("a")])

    def test_dry_run_needs_no_privilege(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, privileged=True,
                                  policy=ConfirmationPolicy.DRY_RUN)
        orch.preflight([target("a")])

    def test_disabled_targets_are_ignored(self):
        orch, _, _ = orchestrator({"a": [update("a")]}, privileged=True)
        orch.preflight([target("a", enabled=False)])


def report_with(*entries, interrupted=False):
    return RunReport(policy=ConfirmationPolicy.ALWAYS_YES, entries=list(entries), interrupted=interrupted)


def entry(decision=None, action=None, verified=None):
    target_id = decision.target_id if decision else "x"
    return RunReportEntry(target_id, target_id, decision=decision, action=action, verified=verified)


class TestExitCode:
    """Test the exit code taxonomy."""

    def test_success(self):
        assert exit_code_for(report_with(entry(up_to_date("a")))) == ExitCode.SUCCESS
        assert exit_code_for(report_with()) == ExitCode.SUCCESS

    def test_absent_and_pending_are_success(self):
        report = report_with(entry(Decision("a", DecisionStatus.ABSENT)), entry(update("b")))
        assert exit_code_for(report) == ExitCode.SUCCESS

    @pytest.mark.parametrize("kind,expected", [
        (ProbeFailureKind.NETWORK_ERROR, ExitCode.NETWORK_FAILURE),
        (ProbeFailureKind.RATE_LIMITED, ExitCode.NETWORK_FAILURE),
        (ProbeFailureKind.PARSE_ERROR, ExitCode.INTEGRITY_ISSUE),
        (ProbeFailureKind.NOT_FOUND, ExitCode.GENERAL),
    ])
    def test_probe_failures(self, kind, expected):
        assert exit_code_for(report_with(entry(failed("a", kind)))) == expected

    def test_network_outranks_parse(self):
        report = report_with(entry(failed("a", ProbeFailureKind.PARSE_ERROR)),
                             entry(failed("b", ProbeFailureKind.NETWORK_ERROR)))
        assert exit_code_for(report) == ExitCode.NETWORK_FAILURE

    def test_action_failure_outranks_probe_failure(self):
        report = report_with(entry(failed("a")),
                             entry(update("b"), action=ActionOutcome(success=False, exit_code=100)))
        assert exit_code_for(report) == ExitCode.PACKAGE_MANAGER_ERROR

    def test_interrupted_outranks_everything(self):
        report = report_with(entry(update("b"), action=ActionOutcome(success=False)), interrupted=True)
        assert exit_code_for(report) == ExitCode.GENERAL

    def test_broken_packages(self):
        decision = Decision("apt-packages", DecisionStatus.UP_TO_DATE, integrity_issues=("libc-bin",))
        report = report_with(entry(decision), entry(failed("b")))

        assert report.integrity_failures == [report.entries[0]]
        assert exit_code_for(report) == ExitCode.INTEGRITY_ISSUE

    def test_action_failure_outranks_broken_packages(self):
        broken = Decision("apt-packages", DecisionStatus.UPDATE_AVAILABLE, integrity_issues=("libc-bin",))
        report = report_with(entry(broken, action=ActionOutcome(success=False, exit_code=100)))
        assert exit_code_for(report) == ExitCode.PACKAGE_MANAGER_ERROR

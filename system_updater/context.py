"""
Run-wide context handed to every component instead of ambient globals.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Optional

import requests

from .constants import DEFAULT_ACTION_TIMEOUT, DEFAULT_PROBE_TIMEOUT
from .models import ActionOutcome, ConfirmationPolicy, Decision, Target
from .utils.command import CommandRunner, SubprocessRunner
from .utils.http import create_session

if TYPE_CHECKING:
    from .config import Config


class OutputSink:
    """
    Receives progress events from the orchestrator.

    The default implementation ignores everything and declines every
    confirmation request.
    """

    def target_started(self, target: Target) -> None:
        pass

    def decision_made(self, target: Target, decision: Decision) -> None:
        pass

    def action_started(self, target: Target, decision: Decision) -> None:
        pass

    def action_finished(self, target: Target, outcome: ActionOutcome) -> None:
        pass

    def target_skipped(self, target: Target, reason: str) -> None:
        pass

    def confirm(self, target: Target, decision: Decision) -> bool:
        """Ask whether the update action for a target should run."""
        return False


@dataclass(frozen=True)
class RunContext:
    """Immutable settings and collaborators for one run."""
    policy: ConfirmationPolicy = ConfirmationPolicy.ALWAYS_PROMPT
    runner: CommandRunner = field(default_factory=SubprocessRunner)
    session: Optional[requests.Session] = None
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    action_timeout: float = DEFAULT_ACTION_TIMEOUT
    github_token: Optional[str] = None
    verify_after_update: bool = True
    bulk_precheck: bool = True
    sink: OutputSink = field(default_factory=OutputSink)

    def http(self) -> requests.Session:
        """The shared HTTP session; probes must not create their own."""
        if self.session is None:
            raise RuntimeError("RunContext has no HTTP session")
        return self.session

    def with_policy(self, policy: ConfirmationPolicy) -> 'RunContext':
        """Return a copy with a different confirmation policy."""
        return replace(self, policy=policy)

    @classmethod
    def from_config(cls, config: 'Config',
                    policy: Optional[ConfirmationPolicy] = None,
                    runner: Optional[CommandRunner] = None,
                    session: Optional[requests.Session] = None,
                    sink: Optional[OutputSink] = None,
                    verify_after_update: Optional[bool] = None) -> 'RunContext':
        """
        Build a context from the user's configuration.

        Explicit arguments (usually from command-line flags) override the
        configured values.
        """
        return cls(
            policy=policy or config.get_confirmation_policy(),
            runner=runner or SubprocessRunner(),
            session=session or create_session(),
            probe_timeout=config.get_probe_timeout(),
            action_timeout=config.get_action_timeout(),
            github_token=config.get_github_token(),
            verify_after_update=(config.get_bool("verify_after_update", True)
                                 if verify_after_update is None else verify_after_update),
            bulk_precheck=config.get_bool("bulk_precheck", True),
            sink=sink or OutputSink(),
        )

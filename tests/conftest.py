"""
Shared fixtures: a scripted command runner, a scripted HTTP session and
helpers for building targets and run contexts.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from system_updater.context import OutputSink, RunContext
from system_updater.models import (
    ActionReference, CommandResult, ConfirmationPolicy, DetectionRule, SourceDescriptor, Target
)
from system_updater.utils.command import EXIT_NOT_FOUND, CommandRunner


class FakeCommandRunner(CommandRunner):
    """
    Command runner answering from a table of argv -> CommandResult.

    Unknown commands behave like a missing executable (exit 127). A list of
    results is consumed in order; the last one repeats.
    """

    def __init__(self, responses: Optional[Dict[Sequence[str], Any]] = None,
                 available: Sequence[str] = (), root: bool = False) -> None:
        self.responses: Dict[tuple, Any] = {}
        for argv, result in (responses or {}).items():
            self.add(argv, result)
        self.available = set(available)
        self.root = root
        self.calls: List[List[str]] = []
        self.kwargs: List[Dict[str, Any]] = []

    def add(self, argv: Sequence[str], result: Any = None, exit_code: int = 0,
            stdout: str = "", stderr: str = "") -> None:
        if result is None:
            result = CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)
        self.responses[tuple(argv)] = list(result) if isinstance(result, list) else result

    def run(self, argv, timeout=None, capture_output=True, env=None) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.kwargs.append({"timeout": timeout, "capture_output": capture_output, "env": env})
        result = self.responses.get(tuple(argv))
        if result is None:
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"{argv[0]}: command not found")
        if isinstance(result, list):
            return result.pop(0) if len(result) > 1 else result[0]
        return result

    def which(self, command: str) -> Optional[str]:
        return f"/usr/bin/{command}" if command in self.available else None

    def is_root(self) -> bool:
        return self.root

    def ran(self, *argv: str) -> bool:
        """Whether a command with exactly this argv was run."""
        return list(argv) in self.calls


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, payload: Any = None, status_code: int = 200,
                 headers: Optional[Dict[str, str]] = None) -> None:
        self._payload = payload
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.closed = False

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    @property
    def text(self) -> str:
        return json.dumps(self._payload)

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """HTTP session answering from a table of URL -> FakeResponse (or exception)."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None) -> None:
        self.routes: Dict[str, Any] = dict(routes or {})
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, timeout=None, headers=None, params=None):
        self.requests.append({"url": url, "timeout": timeout, "headers": headers or {}, "params": params})
        route = self.routes.get(url)
        if route is None:
            return FakeResponse({"message": "Not Found"}, status_code=404)
        if isinstance(route, Exception):
            raise route
        return route


class RecordingSink(OutputSink):
    """Output sink that records events and answers prompts from a list."""

    def __init__(self, answers: Sequence[bool] = ()) -> None:
        self.events: List[tuple] = []
        self.answers = list(answers)

    def target_started(self, target):
        self.events.append(("started", target.id))

    def decision_made(self, target, decision):
        self.events.append(("decision", target.id, decision.status))

    def action_started(self, target, decision):
        self.events.append(("action_started", target.id))

    def action_finished(self, target, outcome):
        self.events.append(("action_finished", target.id, outcome.success))

    def target_skipped(self, target, reason):
        self.events.append(("skipped", target.id, reason))

    def confirm(self, target, decision):
        self.events.append(("confirm", target.id))
        return self.answers.pop(0) if self.answers else False


def make_target(target_id: str = "tool",
                detection: Optional[DetectionRule] = None,
                source: Optional[SourceDescriptor] = None,
                action: Optional[ActionReference] = None,
                **kwargs: Any) -> Target:
    """Build a target with sensible defaults for tests."""
    return Target(
        id=target_id,
        display_name=kwargs.pop("display_name", target_id.title()),
        detection=detection or DetectionRule("command", {"command": [target_id, "--version"]}),
        source=source or SourceDescriptor("github", {"owner": "example", "repo": target_id}),
        update_action=action,
        **kwargs,
    )


def make_context(runner: Optional[CommandRunner] = None,
                 session: Optional[Any] = None,
                 **kwargs: Any) -> RunContext:
    """Build a run context wired to fakes."""
    kwargs.setdefault("policy", ConfirmationPolicy.ALWAYS_YES)
    kwargs.setdefault("verify_after_update", False)
    return RunContext(
        runner=runner if runner is not None else FakeCommandRunner(),
        session=session if session is not None else FakeSession(),
        **kwargs,
    )


@pytest.fixture
def runner():
    """Empty scripted command runner."""
    return FakeCommandRunner()


@pytest.fixture
def session():
    """Empty scripted HTTP session."""
    return FakeSession()


@pytest.fixture
def context(runner, session):
    """Run context using the runner and session fixtures."""
    return make_context(runner, session)


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config, cache and lock files out of the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    return home


@pytest.fixture
def no_network(monkeypatch):
    """Fail the test if anything tries a real HTTP request."""
    def fail(*args, **kwargs):
        raise AssertionError("unexpected network access")
    monkeypatch.setattr(requests.Session, "request", fail)

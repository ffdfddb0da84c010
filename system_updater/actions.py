"""
Update actions: the external routines that actually install a new version.

The orchestrator treats an action as opaque. It calls ``invoke`` and gets
back an ActionOutcome; a failing installer is a failed outcome, never an
exception.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import os
import time
from typing import Any, Callable, Dict, List, Type

from .constants import PRIVILEGE_ALLOWED
from .context import RunContext
from .detection import expand_argv
from .exceptions import ActionError, CommandError, ConfigurationError
from .models import ActionOutcome, ActionReference, Decision, Target
from .utils.command import EXIT_NOT_FOUND, EXIT_TIMEOUT
from .utils.logger import get_logger
from .utils.validators import ValidationError, validate_package_name

logger = get_logger(__name__)

ACTION_REGISTRY: Dict[str, Type['UpdateAction']] = {}


def register_action(kind: str) -> Callable[[Type['UpdateAction']], Type['UpdateAction']]:
    """Class decorator registering an action under a reference kind."""
    def decorator(cls: Type['UpdateAction']) -> Type['UpdateAction']:
        cls.kind = kind
        ACTION_REGISTRY[kind] = cls
        return cls
    return decorator


class UpdateAction:
    """Base class for update actions."""

    kind = ""
    REQUIRED_PARAMS: tuple = ()

    def __init__(self, reference: ActionReference, context: RunContext) -> None:
        self.reference = reference
        self.params = reference.params
        self.context = context

    @classmethod
    def validate(cls, params: Dict[str, Any]) -> None:
        """
        Validate reference parameters at registry load time.

        Raises:
            ConfigurationError: If a parameter is missing or invalid
        """
        for key in cls.REQUIRED_PARAMS:
            if key not in params:
                raise ConfigurationError(f"Action parameter '{key}' is required")
        try:
            cls._validate_params(params)
        except ValidationError as e:
            raise ConfigurationError(str(e))

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        pass

    @property
    def requires_privilege(self) -> bool:
        """Whether the action must run as root (directly or through sudo)."""
        return bool(self.params.get("privileged", False))

    def build_steps(self, target: Target, decision: Decision) -> List[List[str]]:
        """Return the commands to run, in order."""
        raise NotImplementedError

    def describe(self, target: Target, decision: Decision) -> str:
        """Human-readable summary of what invoke() would run."""
        try:
            steps = self.build_steps(target, decision)
        except ActionError as e:
            return f"<invalid action: {e}>"
        prefix = "sudo " if self.requires_privilege and not self.context.runner.is_root() else ""
        return " && ".join(prefix + " ".join(step) for step in steps)

    def invoke(self, target: Target, decision: Decision) -> ActionOutcome:
        """
        Run the action for a target.

        Args:
            target: Target being updated
            decision: Decision that triggered the update

        Returns:
            Outcome of the action
        """
        start = time.monotonic()
        try:
            steps = self.build_steps(target, decision)
        except ActionError as e:
            return ActionOutcome(success=False, message=str(e))

        prefix: List[str] = []
        if self.requires_privilege:
            escalation = self.context.runner.privilege_prefix()
            if escalation is None:
                return ActionOutcome(success=False, message="root privileges required but sudo is not available")
            prefix = escalation

        for index, step in enumerate(steps, 1):
            logger.info(f"Updating {target.id}: {' '.join(step)}")
            try:
                result = self.context.runner.run(prefix + step, timeout=self.context.action_timeout,
                                                 capture_output=False)
            except CommandError as e:
                return ActionOutcome(success=False, message=str(e), duration_sec=time.monotonic() - start)

            if not result.ok:
                if result.exit_code == EXIT_NOT_FOUND:
                    message = f"{step[0]} is not installed"
                elif result.exit_code == EXIT_TIMEOUT:
                    message = f"{step[0]} timed out after {self.context.action_timeout}s"
                else:
                    message = f"{step[0]} exited with {result.exit_code}"
                if len(steps) > 1:
                    message = f"step {index}/{len(steps)}: {message}"
                return ActionOutcome(success=False, message=message, exit_code=result.exit_code,
                                     duration_sec=time.monotonic() - start)

        return ActionOutcome(success=True, message="completed", exit_code=0,
                             duration_sec=time.monotonic() - start)


def _substitute(arg: str, target: Target, decision: Decision) -> str:
    values = {
        "{latest}": decision.latest or "",
        "{installed}": decision.installed or "",
        "{id}": target.id,
    }
    for placeholder, value in values.items():
        arg = arg.replace(placeholder, value)
    return arg


@register_action("command")
class CommandAction(UpdateAction):
    """
    Runs a fixed command.

    ``{latest}``, ``{installed}`` and ``{id}`` in arguments are replaced with
    the decision's values; arguments starting with ``~`` are expanded.
    """

    REQUIRED_PARAMS = ("command",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        argv = expand_argv(params["command"])
        if params.get("privileged") and os.path.basename(argv[0]) not in PRIVILEGE_ALLOWED:
            raise ValidationError(f"Command '{argv[0]}' may not run with privileges")

    def build_steps(self, target: Target, decision: Decision) -> List[List[str]]:
        try:
            argv = expand_argv(self.params["command"])
        except ConfigurationError as e:
            raise ActionError(str(e))
        return [[_substitute(arg, target, decision) for arg in argv]]


# argv template and whether it needs root, per package manager
PACKAGE_UPGRADE_COMMANDS: Dict[str, Any] = {
    "apt": (lambda p: ["apt-get", "install", "--only-upgrade", "-y", p], True),
    "pacman": (lambda p: ["pacman", "-S", "--needed", "--noconfirm", p], True),
    "dnf": (lambda p: ["dnf", "upgrade", "-y", p], True),
    "brew": (lambda p: ["brew", "upgrade", p], False),
    "snap": (lambda p: ["snap", "refresh", p], True),
    "npm": (lambda p: ["npm", "install", "-g", f"{p}@latest"], False),
    "pip": (lambda p: ["python3", "-m", "pip", "install", "--user", "--upgrade", p], False),
    "cargo": (lambda p: ["cargo", "install", p], False),
}


@register_action("package_manager")
class PackageManagerAction(UpdateAction):
    """Upgrades a single package with its package manager."""

    REQUIRED_PARAMS = ("manager", "package")

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if params["manager"] not in PACKAGE_UPGRADE_COMMANDS:
            raise ValidationError(f"Unsupported package manager: {params['manager']}")
        if not validate_package_name(params["package"]):
            raise ValidationError(f"Invalid package name: {params['package']}")

    @property
    def requires_privilege(self) -> bool:
        if "privileged" in self.params:
            return bool(self.params["privileged"])
        return PACKAGE_UPGRADE_COMMANDS[self.params["manager"]][1]

    def build_steps(self, target: Target, decision: Decision) -> List[List[str]]:
        build, _ = PACKAGE_UPGRADE_COMMANDS[self.params["manager"]]
        return [build(self.params["package"])]


# Commands and whether they need root, per package manager; pip upgrades
# the decision's outdated packages one by one
SYSTEM_UPGRADE_STEPS: Dict[str, Any] = {
    "apt": ([["apt-get", "update"], ["apt-get", "upgrade", "-y"]], True),
    "pacman": ([["pacman", "-Syu", "--noconfirm"]], True),
    "snap": ([["snap", "refresh"]], True),
    "npm": ([["npm", "update", "-g"]], False),
    "cargo": ([["cargo", "install-update", "-a"]], False),
    "pip": ([], False),
}


@register_action("system_upgrade")
class SystemUpgradeAction(UpdateAction):
    """Upgrades every package of one package manager."""

    REQUIRED_PARAMS = ("manager",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if params["manager"] not in SYSTEM_UPGRADE_STEPS:
            raise ValidationError(f"Unsupported package manager for system upgrade: {params['manager']}")

    @property
    def requires_privilege(self) -> bool:
        if "privileged" in self.params:
            return bool(self.params["privileged"])
        return SYSTEM_UPGRADE_STEPS[self.params["manager"]][1]

    def build_steps(self, target: Target, decision: Decision) -> List[List[str]]:
        if self.params["manager"] == "pip":
            return self._pip_steps(decision)
        steps = [list(step) for step in SYSTEM_UPGRADE_STEPS[self.params["manager"]][0]]
        if self.params["manager"] == "apt" and self.params.get("dist_upgrade"):
            steps[-1] = ["apt-get", "dist-upgrade", "-y"]
        return steps

    @staticmethod
    def _pip_steps(decision: Decision) -> List[List[str]]:
        if not decision.packages:
            raise ActionError("no outdated pip packages to upgrade")
        build, _ = PACKAGE_UPGRADE_COMMANDS["pip"]
        steps = []
        for package in decision.packages:
            if not validate_package_name(package.name):
                raise ActionError(f"Invalid package name: {package.name}")
            steps.append(build(package.name))
        return steps


def create_action(reference: ActionReference, context: RunContext) -> UpdateAction:
    """
    Instantiate the action registered for a reference.

    Raises:
        ConfigurationError: If no action is registered for the kind
    """
    action_cls = ACTION_REGISTRY.get(reference.kind)
    if action_cls is None:
        raise ConfigurationError(f"Unknown action kind: {reference.kind}")
    return action_cls(reference, context)

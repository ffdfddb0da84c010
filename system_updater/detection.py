"""
Installed-version detection.

A detection rule never fails: a missing command, a non-zero exit, output
that does not match, or an unreadable file all mean the target is absent.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import os
import shlex
from typing import Any, Callable, Dict, List, Optional, Type

from .context import RunContext
from .exceptions import CommandError, ConfigurationError
from .models import CommandResult, DetectionRule
from .utils.logger import get_logger
from .utils.validators import ValidationError, compile_pattern, validate_package_name

logger = get_logger(__name__)

DETECTOR_REGISTRY: Dict[str, Type['Detector']] = {}

DEFAULT_VERSION_PATTERN = r'\b[vV]?(\d+(?:\.\d+)+(?:[-~+]?[0-9A-Za-z.]+)?)'
DETECTION_TIMEOUT = 30
MAX_DETECTION_FILE_SIZE = 1024 * 1024


def register_detector(kind: str) -> Callable[[Type['Detector']], Type['Detector']]:
    """Class decorator registering a detector under a rule kind."""
    def decorator(cls: Type['Detector']) -> Type['Detector']:
        cls.kind = kind
        DETECTOR_REGISTRY[kind] = cls
        return cls
    return decorator


def expand_argv(command: Any) -> List[str]:
    """
    Normalize a command given as a list or a string into an argv list.

    Elements starting with ``~`` are expanded to the user's home directory.

    Raises:
        ConfigurationError: If the command is empty or not a string/list of strings
    """
    if isinstance(command, str):
        argv = shlex.split(command)
    elif isinstance(command, list) and all(isinstance(a, str) for a in command):
        argv = list(command)
    else:
        raise ConfigurationError("command must be a string or a list of strings")
    if not argv:
        raise ConfigurationError("command must not be empty")
    return [os.path.expanduser(a) if a.startswith("~") else a for a in argv]


class Detector:
    """Base class for detection rule kinds."""

    kind = ""
    REQUIRED_PARAMS: tuple = ()

    def __init__(self, rule: DetectionRule, context: RunContext) -> None:
        self.rule = rule
        self.params = rule.params
        self.context = context

    @classmethod
    def validate(cls, params: Dict[str, Any]) -> None:
        """
        Validate rule parameters at registry load time.

        Raises:
            ConfigurationError: If a parameter is missing or invalid
        """
        for key in cls.REQUIRED_PARAMS:
            if key not in params:
                raise ConfigurationError(f"Detection parameter '{key}' is required")
        try:
            cls._validate_params(params)
        except ValidationError as e:
            raise ConfigurationError(str(e))

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        pass

    def detect(self) -> Optional[str]:
        raise NotImplementedError

    def _run(self, argv: List[str]) -> Optional[CommandResult]:
        try:
            return self.context.runner.run(argv, timeout=DETECTION_TIMEOUT)
        except CommandError as e:
            logger.debug(f"Detection command rejected: {e}")
            return None

    def _match(self, text: str) -> Optional[str]:
        compiled = compile_pattern(self.params.get("pattern") or DEFAULT_VERSION_PATTERN)
        match = compiled.search(text)
        if not match:
            return None
        value = match.group(1) if compiled.groups else match.group(0)
        return value.strip() or None


@register_detector("command")
class CommandOutputDetector(Detector):
    """Runs a command and extracts the version from its output with a regex."""

    REQUIRED_PARAMS = ("command",)

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        expand_argv(params["command"])
        if params.get("pattern") is not None:
            compile_pattern(params["pattern"])
        codes = params.get("absent_exit_codes")
        if codes is not None and not (isinstance(codes, list) and all(isinstance(c, int) for c in codes)):
            raise ValidationError("absent_exit_codes must be a list of integers")

    def detect(self) -> Optional[str]:
        argv = expand_argv(self.params["command"])
        result = self._run(argv)
        if result is None:
            return None
        if not result.ok:
            expected = self.params.get("absent_exit_codes")
            if expected is not None and result.exit_code not in expected:
                logger.warning(f"{argv[0]} exited with unexpected status {result.exit_code}, treating as absent")
            else:
                logger.debug(f"{argv[0]} exited with {result.exit_code}, treating as absent")
            return None
        return self._match(result.stdout) or self._match(result.stderr)


@register_detector("file")
class FileReadDetector(Detector):
    """Reads a file (``~`` expanded) and extracts the version with a regex."""

    REQUIRED_PARAMS = ("path", "pattern")

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if not isinstance(params["path"], str) or not params["path"]:
            raise ValidationError("path must be a non-empty string")
        compile_pattern(params["pattern"])

    def detect(self) -> Optional[str]:
        path = os.path.expanduser(self.params["path"])
        try:
            if os.path.getsize(path) > MAX_DETECTION_FILE_SIZE:
                logger.warning(f"Detection file too large: {path}")
                return None
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None
        return self._match(content)


def _parse_dpkg(result: CommandResult, name: str) -> Optional[str]:
    status, _, version = result.stdout.strip().partition(" ")
    return version.strip() if status == "installed" and version.strip() else None


def _parse_pacman(result: CommandResult, name: str) -> Optional[str]:
    parts = result.stdout.split()
    return parts[1] if len(parts) >= 2 and parts[0] == name else None


def _parse_first_line(result: CommandResult, name: str) -> Optional[str]:
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    return lines[0] if lines else None


def _parse_snap(result: CommandResult, name: str) -> Optional[str]:
    for line in result.stdout.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[0] == name:
            return parts[1]
    return None


def _parse_brew(result: CommandResult, name: str) -> Optional[str]:
    parts = result.stdout.split()
    return parts[-1] if len(parts) >= 2 else None


def _parse_npm(result: CommandResult, name: str) -> Optional[str]:
    try:
        data = json.loads(result.stdout or "{}")
    except ValueError:
        return None
    entry = (data.get("dependencies") or {}).get(name) or {}
    return entry.get("version")


def _parse_pip(result: CommandResult, name: str) -> Optional[str]:
    for line in result.stdout.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "Version":
            return value.strip() or None
    return None


def _parse_cargo(result: CommandResult, name: str) -> Optional[str]:
    # Lines look like "ripgrep v14.1.0:" followed by indented binaries
    for line in result.stdout.splitlines():
        if line.startswith(f"{name} v"):
            return line.split()[1].lstrip("v").rstrip(":")
    return None


PACKAGE_QUERIES: Dict[str, Any] = {
    "dpkg": (lambda n: ["dpkg-query", "-W", "-f=${db:Status-Status} ${Version}", n], _parse_dpkg),
    "pacman": (lambda n: ["pacman", "-Q", n], _parse_pacman),
    "rpm": (lambda n: ["rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}\n", n], _parse_first_line),
    "snap": (lambda n: ["snap", "list", n], _parse_snap),
    "brew": (lambda n: ["brew", "list", "--versions", n], _parse_brew),
    "npm": (lambda n: ["npm", "ls", "-g", "--depth=0", "--json", n], _parse_npm),
    "pip": (lambda n: ["python3", "-m", "pip", "show", n], _parse_pip),
    "cargo": (lambda n: ["cargo", "install", "--list"], _parse_cargo),
}


@register_detector("package")
class PackageQueryDetector(Detector):
    """Asks a package manager which version of a package is installed."""

    REQUIRED_PARAMS = ("manager", "name")

    @classmethod
    def _validate_params(cls, params: Dict[str, Any]) -> None:
        if params["manager"] not in PACKAGE_QUERIES:
            raise ValidationError(f"Unsupported package manager: {params['manager']}")
        if not validate_package_name(params["name"]):
            raise ValidationError(f"Invalid package name: {params['name']}")

    def detect(self) -> Optional[str]:
        manager, name = self.params["manager"], self.params["name"]
        build_argv, parse = PACKAGE_QUERIES[manager]
        result = self._run(build_argv(name))
        if result is None or not result.ok:
            logger.debug(f"{manager} reports {name} as not installed")
            return None
        return parse(result, name)


class InstalledVersionDetector:
    """Runs detection rules; every failure is reported as absent (None)."""

    def __init__(self, context: RunContext) -> None:
        self.context = context

    def detect_installed(self, rule: DetectionRule) -> Optional[str]:
        """
        Detect the installed version described by a rule.

        Args:
            rule: Declarative detection rule

        Returns:
            Installed version string, or None when the target is absent
        """
        detector_cls = DETECTOR_REGISTRY.get(rule.kind)
        if detector_cls is None:
            logger.warning(f"Unknown detection kind {rule.kind!r}, treating target as absent")
            return None
        try:
            version = detector_cls(rule, self.context).detect()
        except (ConfigurationError, ValidationError, OSError, ValueError) as e:
            logger.debug(f"Detection failed ({rule.kind}): {e}")
            return None
        if version:
            logger.debug(f"Detected installed version {version} via {rule.kind}")
        return version or None

"""
Command execution seam used by detectors, probes, bulk checks and actions.

Every external program goes through a ``CommandRunner`` so that the whole
decision pipeline can be exercised against recorded outputs in tests.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Dict, List, Optional, Sequence

from ..constants import PRIVILEGE_ALLOWED
from ..exceptions import CommandError
from ..models import CommandResult
from .logger import get_logger, log_security_event, sanitize_log_message

logger = get_logger(__name__)

# Conventional shell exit statuses
EXIT_TIMEOUT = 124
EXIT_CANNOT_EXECUTE = 126
EXIT_NOT_FOUND = 127


class CommandRunner:
    """Interface for running external commands."""

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        capture_output: bool = True,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        Run a command and return its result.

        Implementations must not raise for a missing executable or a timeout;
        those are reported through the exit code (127 and 124).
        """
        raise NotImplementedError

    def which(self, command: str) -> Optional[str]:
        """Return the absolute path of a command, or None if unavailable."""
        raise NotImplementedError

    def is_root(self) -> bool:
        """Whether the current process runs with uid 0."""
        return hasattr(os, "geteuid") and os.geteuid() == 0

    def privilege_prefix(self) -> Optional[List[str]]:
        """
        Get the argv prefix needed to run a privileged command.

        Returns:
            [] when already root, ["sudo"] when sudo is available, None otherwise
        """
        if self.is_root():
            return []
        if self.which("sudo"):
            return ["sudo"]
        return None


class SubprocessRunner(CommandRunner):
    """Runs commands with subprocess, never through a shell."""

    def __init__(self, locale_c: bool = True) -> None:
        """
        Initialize the runner.

        Args:
            locale_c: Force LC_ALL=C so tool output can be parsed reliably
        """
        self.locale_c = locale_c

    def which(self, command: str) -> Optional[str]:
        return shutil.which(command)

    @staticmethod
    def validate_command(argv: Sequence[str]) -> None:
        """
        Validate that a command is safe to execute.

        Raises:
            CommandError: If the command is empty or escalates a command not
                on the privilege allow-list
        """
        if not argv:
            raise CommandError("Empty command")

        if argv[0] == "sudo":
            if len(argv) < 2:
                raise CommandError("sudo without a command")
            actual = os.path.basename(argv[1])
            if actual not in PRIVILEGE_ALLOWED:
                log_security_event(
                    "UNAUTHORIZED_SUDO_COMMAND",
                    {"command": actual, "args_count": len(argv)},
                    severity="warning"
                )
                raise CommandError(f"Command '{actual}' not allowed with sudo")
            log_security_event(
                "PRIVILEGED_COMMAND_EXECUTION",
                {"command": actual, "args_count": len(argv)},
                severity="info"
            )

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        capture_output: bool = True,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        cmd = [str(arg) for arg in argv]
        self.validate_command(cmd)

        if shutil.which(cmd[0]) is None:
            logger.debug(f"Command not found: {cmd[0]}")
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"{cmd[0]}: command not found")

        run_env = dict(os.environ)
        if self.locale_c:
            run_env["LC_ALL"] = "C"
        if env:
            run_env.update(env)

        logger.debug(sanitize_log_message(f"Running command: {' '.join(cmd)}"))

        try:
            result = subprocess.run(
                cmd,
                capture_output=capture_output,
                text=True,
                errors="replace",
                timeout=timeout,
                env=run_env,
                stdin=None if not capture_output else subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {timeout}s: {cmd[0]}")
            return CommandResult(exit_code=EXIT_TIMEOUT, stderr=f"timed out after {timeout}s")
        except FileNotFoundError:
            return CommandResult(exit_code=EXIT_NOT_FOUND, stderr=f"{cmd[0]}: command not found")
        except OSError as e:
            # Permission denied, exec format error and the like
            logger.error(f"Cannot execute {cmd[0]}: {e}")
            return CommandResult(exit_code=EXIT_CANNOT_EXECUTE, stderr=str(e))

        if result.returncode != 0:
            logger.debug(f"Command returned non-zero: {result.returncode}")

        return CommandResult(
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

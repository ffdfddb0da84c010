"""
Custom exceptions for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later


class SystemUpdaterError(Exception):
    """Base exception for all System Updater errors."""

    pass


class ConfigurationError(SystemUpdaterError):
    """Raised when configuration or a target descriptor is invalid."""

    def __init__(self, message: str, origin: str = "") -> None:
        """Initialize the error."""
        super().__init__(message)
        self.origin = origin

    def __str__(self) -> str:
        if self.origin:
            return f"{self.args[0]} ({self.origin})"
        return str(self.args[0])


class CommandError(SystemUpdaterError):
    """Raised when a command is rejected before it is executed."""

    pass


class ActionError(SystemUpdaterError):
    """Raised when an update action cannot be started."""

    pass


class FatalError(SystemUpdaterError):
    """Raised when the run cannot start at all."""

    pass


class InsufficientPrivilegeError(FatalError):
    """Raised when an update needs root and no escalation is available."""

    pass


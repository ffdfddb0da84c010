"""
Utility modules for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from .logger import get_logger, set_global_config
from .command import CommandRunner, SubprocessRunner

__all__ = ["get_logger", "set_global_config", "CommandRunner", "SubprocessRunner"]

"""
Application constants for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from enum import IntEnum
from pathlib import Path

# Application info
APP_NAME = "System Updater"
APP_SLUG = "system-updater"
APP_VERSION = "1.0.0"
APP_USER_AGENT = f"{APP_SLUG}/{APP_VERSION}"

# File permissions (octal)
CONFIG_DIR_PERMISSIONS = 0o700  # rwx------
CONFIG_FILE_PERMISSIONS = 0o600  # rw-------
CACHE_DIR_PERMISSIONS = 0o700   # rwx------

# Default values
DEFAULT_PROBE_TIMEOUT = 10
DEFAULT_ACTION_TIMEOUT = 3600
DEFAULT_HISTORY_RETENTION_DAYS = 365
MAX_PROBE_TIMEOUT = 120
MAX_DESCRIPTOR_SIZE = 1024 * 1024  # 1MB
MAX_CONFIG_SIZE = 1024 * 1024

# Pending-updates checks must stay well under the 5 second budget
BULK_PRECHECK_TIMEOUT = 5
# Full per-package pipelines touch every installed package
BULK_PIPELINE_TIMEOUT = 120
APT_POLICY_BATCH_SIZE = 200

# Upstream endpoints
GITHUB_API_URL = "https://api.github.com"
NPM_REGISTRY_URL = "https://registry.npmjs.org"
PYPI_URL = "https://pypi.org/pypi"
CRATES_API_URL = "https://crates.io/api/v1/crates"
GITHUB_RELEASES_PER_PAGE = 30

# Native tools
APT_CHECK_PATH = "/usr/lib/update-notifier/apt-check"

# Validation patterns
PACKAGE_NAME_PATTERN = r'^(@[a-zA-Z0-9][a-zA-Z0-9\-_.]*/)?[a-zA-Z0-9][a-zA-Z0-9\-_.+]*$'
TARGET_ID_PATTERN = r'^[a-z0-9][a-z0-9\-_.]{0,63}$'
COMMIT_HASH_PATTERN = r'^[0-9a-fA-F]{7,64}$'

# Commands that may run behind sudo
PRIVILEGE_ALLOWED = {
    "apt", "apt-get", "dpkg", "pacman", "dnf", "yum", "snap",
    "npm", "sh", "bash", "make", "install",
}


class ExitCode(IntEnum):
    """Process exit codes consumed by shell callers."""
    SUCCESS = 0
    GENERAL = 1
    INSUFFICIENT_PRIVILEGE = 2
    NETWORK_FAILURE = 3
    PACKAGE_MANAGER_ERROR = 4
    INTEGRITY_ISSUE = 5


# Paths
def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path.home() / ".config" / APP_SLUG

def get_cache_dir() -> Path:
    """Get the cache directory path."""
    return Path.home() / ".cache" / APP_SLUG

def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return get_config_dir() / "config.json"

def get_user_targets_dir() -> Path:
    """Get the directory holding user-supplied target descriptors."""
    return get_config_dir() / "targets"

def get_builtin_targets_dir() -> Path:
    """Get the directory of target descriptors shipped with the package."""
    return Path(__file__).resolve().parent / "targets"

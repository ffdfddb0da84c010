"""
Input validation utilities for descriptors, configuration and command arguments.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import re
from typing import Any, Optional, Pattern
from urllib.parse import urlparse

from ..constants import PACKAGE_NAME_PATTERN, TARGET_ID_PATTERN, COMMIT_HASH_PATTERN
from .logger import get_logger

logger = get_logger(__name__)

MAX_PACKAGE_NAME_LENGTH = 214  # npm's limit, the longest of the supported ecosystems
MAX_PATTERN_LENGTH = 512
MAX_URL_LENGTH = 2048

_GIT_REF_PATTERN = re.compile(r'^(?!-)(?!.*\.\.)[A-Za-z0-9._/\-]{1,255}$')


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


def validate_package_name(name: str) -> bool:
    """
    Validate a package name before it is passed to a package manager.

    Scoped npm names (``@scope/name``) are accepted; anything that could be
    read as an option or a shell metacharacter is not.

    Args:
        name: Package name to validate

    Returns:
        True if package name is valid and safe
    """
    if not name or not isinstance(name, str):
        return False
    if len(name) > MAX_PACKAGE_NAME_LENGTH:
        logger.warning(f"Package name too long: {len(name)} characters")
        return False
    if not re.match(PACKAGE_NAME_PATTERN, name):
        logger.warning(f"Invalid package name format: {name}")
        return False
    if '..' in name:
        logger.warning(f"Suspicious sequence in package name: {name}")
        return False
    return True


def validate_target_id(target_id: str) -> bool:
    """
    Validate a target identifier.

    Args:
        target_id: Identifier such as ``kitty`` or ``apt-packages``

    Returns:
        True if the identifier is valid
    """
    return isinstance(target_id, str) and bool(re.match(TARGET_ID_PATTERN, target_id))


def validate_commit_hash(value: str) -> bool:
    """Check whether a string looks like a git commit hash."""
    return isinstance(value, str) and bool(re.match(COMMIT_HASH_PATTERN, value))


def validate_git_ref(ref: str) -> bool:
    """Check whether a string is an acceptable branch or tag name."""
    return isinstance(ref, str) and bool(_GIT_REF_PATTERN.match(ref))


def compile_pattern(pattern: str, require_group: bool = False) -> Pattern[str]:
    """
    Compile a user-supplied regular expression.

    Args:
        pattern: Regular expression source
        require_group: Require at least one capture group

    Returns:
        Compiled pattern

    Raises:
        ValidationError: If the pattern is too long, invalid, or lacks a group
    """
    if not isinstance(pattern, str) or not pattern:
        raise ValidationError("Pattern must be a non-empty string")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ValidationError(f"Pattern too long: {len(pattern)} > {MAX_PATTERN_LENGTH}")
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ValidationError(f"Invalid pattern {pattern!r}: {e}") from e
    if require_group and compiled.groups < 1:
        raise ValidationError(f"Pattern {pattern!r} needs a capture group")
    return compiled


def validate_url(url: str, require_https: bool = False) -> bool:
    """
    Validate a URL used as a git remote or registry endpoint.

    Args:
        url: URL to validate
        require_https: Reject plain http

    Returns:
        True if URL is acceptable
    """
    if not url or not isinstance(url, str) or len(url) > MAX_URL_LENGTH:
        return False
    if url.startswith('-'):
        return False
    # scp-style git remotes, e.g. git@github.com:owner/repo.git
    if re.match(r'^[A-Za-z0-9._\-]+@[A-Za-z0-9.\-]+:[A-Za-z0-9._/\-~]+$', url):
        return not require_https
    parsed = urlparse(url)
    allowed = {'https'} if require_https else {'https', 'http', 'git', 'ssh'}
    if parsed.scheme not in allowed:
        logger.warning(f"Unsupported URL scheme: {parsed.scheme}")
        return False
    return bool(parsed.netloc)


def validate_config_value(key: str, value: Any, value_type: type,
                          min_value: Optional[Any] = None,
                          max_value: Optional[Any] = None) -> bool:
    """
    Validate a configuration value.

    Args:
        key: Configuration key
        value: Value to validate
        value_type: Expected type
        min_value: Minimum allowed value
        max_value: Maximum allowed value

    Returns:
        True if value is valid
    """
    # bool is a subclass of int, but True is not a timeout
    if value_type in (int, float) and isinstance(value, bool):
        logger.warning(f"Invalid type for {key}: expected {value_type.__name__}, got bool")
        return False
    if not isinstance(value, value_type):
        logger.warning(f"Invalid type for {key}: expected {value_type.__name__}, got {type(value).__name__}")
        return False

    if value_type in (int, float):
        if min_value is not None and value < min_value:
            logger.warning(f"Value for {key} below minimum: {value} < {min_value}")
            return False
        if max_value is not None and value > max_value:
            logger.warning(f"Value for {key} above maximum: {value} > {max_value}")
            return False

    return True

"""
Version comparison across the versioning schemes of the supported sources.

Two paths are used. Strings carrying Debian or Arch packaging syntax (an
epoch, a revision or a tilde) are handed to the platform's own comparator
(``dpkg --compare-versions`` or ``vercmp``) when it is installed. Everything
else, and every native failure, goes through the parser below.

Custom grammar
--------------
``[v|V] segment ('.' segment)* ['+' build]``

* The first segment starts with a digit. Build metadata after ``+`` is
  ignored.
* A segment is a run of digits (empty means 0) followed by an optional
  suffix: ``2.0.1rc1`` becomes ``(2, ''), (0, ''), (1, 'rc1')``.
* The shorter sequence is padded on the right with ``(0, '')``, so
  ``1.2 == 1.2.0``.
* Numbers compare as integers. On a tie, suffixes are ordered as
  ``'~...' < 'anything else' < no suffix``; within a class they compare
  lexically. So ``2.0.1rc1 < 2.0.1`` and ``1.0~beta < 1.0a < 1.0``.
* A string outside the grammar is unparsable. Two unparsable strings compare
  lexically and any parsable version is greater than an unparsable one.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import functools
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .exceptions import CommandError
from .utils.command import CommandRunner
from .utils.logger import get_logger

logger = get_logger(__name__)

_VERSION_RE = re.compile(r'^[vV]?(\d[0-9A-Za-z~_:\-]*)((?:\.[0-9A-Za-z~_:\-]+)*)$')
_SEGMENT_RE = re.compile(r'^(\d*)(.*)$')
_DEBIAN_RE = re.compile(r'^(\d+:)?\d[A-Za-z0-9.+~]*(-[A-Za-z0-9.+~]+)?$')
_NATIVE_MARKERS = re.compile(r'[:~-]')

NATIVE_COMPARE_TIMEOUT = 5


class Ordering(Enum):
    """Result of a version comparison."""
    LESS = -1
    EQUAL = 0
    GREATER = 1

    @classmethod
    def from_int(cls, value: int) -> 'Ordering':
        """Map a cmp-style integer onto an Ordering."""
        if value < 0:
            return cls.LESS
        if value > 0:
            return cls.GREATER
        return cls.EQUAL


Segment = Tuple[int, str]
_PAD: Segment = (0, "")


def _suffix_rank(suffix: str) -> Tuple[int, str]:
    if not suffix:
        return (2, "")
    if suffix.startswith("~"):
        return (0, suffix)
    return (1, suffix)


@functools.total_ordering
@dataclass(frozen=True)
class Version:
    """A parsed version string; ``raw`` keeps the original for display."""
    segments: Tuple[Segment, ...]
    raw: str

    @classmethod
    def parse(cls, raw: str) -> Optional['Version']:
        """
        Parse a version string with the custom grammar.

        Args:
            raw: Version string such as ``v2.0.1rc1``

        Returns:
            Version, or None if the string is outside the grammar
        """
        if not isinstance(raw, str):
            return None
        text = raw.strip().split("+", 1)[0]
        match = _VERSION_RE.match(text)
        if not match:
            return None
        body = text[1:] if text[0] in "vV" else text

        segments: List[Segment] = []
        for part in body.split("."):
            number, suffix = _SEGMENT_RE.match(part).groups()
            segments.append((int(number) if number else 0, suffix))
        return cls(segments=tuple(segments), raw=raw)

    def _key_at(self, index: int) -> Tuple[int, Tuple[int, str]]:
        number, suffix = self.segments[index] if index < len(self.segments) else _PAD
        return (number, _suffix_rank(suffix))

    def compare(self, other: 'Version') -> Ordering:
        """Compare segment by segment after right-padding."""
        for i in range(max(len(self.segments), len(other.segments))):
            mine, theirs = self._key_at(i), other._key_at(i)
            if mine != theirs:
                return Ordering.LESS if mine < theirs else Ordering.GREATER
        return Ordering.EQUAL

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == Ordering.EQUAL

    def __lt__(self, other: 'Version') -> bool:
        return self.compare(other) == Ordering.LESS

    def __hash__(self) -> int:
        trimmed = list(self.segments)
        while trimmed and trimmed[-1] == _PAD:
            trimmed.pop()
        return hash(tuple(trimmed))

    def __str__(self) -> str:
        return self.raw


def compare_versions(a: str, b: str) -> Ordering:
    """
    Compare two version strings with the custom grammar only.

    Never raises; unparsable input falls back to lexical comparison.
    """
    va, vb = Version.parse(a), Version.parse(b)
    if va is not None and vb is not None:
        return va.compare(vb)
    if va is None and vb is None:
        sa, sb = str(a), str(b)
        return Ordering.EQUAL if sa == sb else (Ordering.LESS if sa < sb else Ordering.GREATER)
    return Ordering.GREATER if va is not None else Ordering.LESS


def compare_commits(installed: str, latest: str) -> Ordering:
    """
    Compare two commit hashes.

    Commits carry no order: identical hashes are EQUAL, anything else means
    the installed commit is behind (LESS).
    """
    if installed.strip().lower() == latest.strip().lower():
        return Ordering.EQUAL
    return Ordering.LESS


version_sort_key = functools.cmp_to_key(lambda a, b: compare_versions(a, b).value)


def newest(versions: Iterable[str]) -> Optional[str]:
    """Return the greatest version of an iterable, or None if it is empty."""
    candidates = list(versions)
    if not candidates:
        return None
    return max(candidates, key=version_sort_key)


def looks_native(version: str) -> bool:
    """Whether a string uses packaging syntax the native comparators understand better."""
    return bool(_DEBIAN_RE.match(version)) and bool(_NATIVE_MARKERS.search(version))


class VersionComparator:
    """
    Compares versions, deferring to ``dpkg`` or ``vercmp`` for packaging
    versions when one of them is available.
    """

    def __init__(self, runner: Optional[CommandRunner] = None):
        """
        Initialize the comparator.

        Args:
            runner: Command runner for the native tools; None disables them
        """
        self.runner = runner
        self._native: Optional[str] = None
        self._native_probed = runner is None

    def _native_tool(self) -> Optional[str]:
        if not self._native_probed:
            self._native_probed = True
            for tool in ("dpkg", "vercmp"):
                if self.runner.which(tool):
                    self._native = tool
                    break
            logger.debug(f"Native version comparator: {self._native or 'none'}")
        return self._native

    def _dpkg_compare(self, a: str, b: str) -> Optional[Ordering]:
        result = self.runner.run(["dpkg", "--compare-versions", a, "lt", b],
                                 timeout=NATIVE_COMPARE_TIMEOUT)
        if result.exit_code == 0:
            return Ordering.LESS
        if result.exit_code != 1:
            return None
        result = self.runner.run(["dpkg", "--compare-versions", a, "eq", b],
                                 timeout=NATIVE_COMPARE_TIMEOUT)
        if result.exit_code == 0:
            return Ordering.EQUAL
        if result.exit_code == 1:
            return Ordering.GREATER
        return None

    def _vercmp_compare(self, a: str, b: str) -> Optional[Ordering]:
        result = self.runner.run(["vercmp", a, b], timeout=NATIVE_COMPARE_TIMEOUT)
        if not result.ok:
            return None
        try:
            return Ordering.from_int(int(result.stdout.strip()))
        except ValueError:
            return None

    def compare(self, a: str, b: str) -> Ordering:
        """
        Compare two version strings.

        Args:
            a: Left-hand version
            b: Right-hand version

        Returns:
            Ordering of a relative to b
        """
        if a == b:
            return Ordering.EQUAL

        if (looks_native(a) or looks_native(b)) and _DEBIAN_RE.match(a) and _DEBIAN_RE.match(b):
            tool = self._native_tool()
            if tool:
                try:
                    if tool == "dpkg":
                        outcome = self._dpkg_compare(a, b)
                    else:
                        outcome = self._vercmp_compare(a, b)
                except (CommandError, OSError) as e:
                    logger.debug(f"Native comparison failed: {e}")
                    outcome = None
                if outcome is not None:
                    return outcome
                logger.debug(f"{tool} could not compare {a!r} and {b!r}, using fallback parser")

        return compare_versions(a, b)

"""
Bulk package sources: every package of one package manager as one target.

APT and Pacman cover the OS; npm (global), pip, cargo and snap cover the
language and application package managers.

Each source offers two operations. ``pending_updates`` is the package
manager's own cheap "anything to upgrade?" check and returns None whenever
it cannot give a trustworthy answer. ``outdated_packages`` is the full
per-package pipeline that compares every installed package against the
repository candidate.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from .constants import (
    APT_CHECK_PATH, APT_POLICY_BATCH_SIZE, BULK_PIPELINE_TIMEOUT, BULK_PRECHECK_TIMEOUT
)
from .context import RunContext
from .models import CommandResult, PackageUpdate, ProbeFailureKind
from .probes import ProbeError, parse_apt_policy
from .utils.command import EXIT_NOT_FOUND, EXIT_TIMEOUT
from .utils.logger import get_logger
from .versioning import Ordering, VersionComparator

logger = get_logger(__name__)

BULK_SOURCE_REGISTRY: Dict[str, Type['BulkPackageSource']] = {}

_QU_LINE = re.compile(r'^(\S+)\s+(\S+)\s+->\s+(\S+)')


def register_bulk_source(manager: str):
    """Class decorator registering a bulk source under a manager name."""
    def decorator(cls: Type['BulkPackageSource']) -> Type['BulkPackageSource']:
        cls.manager = manager
        BULK_SOURCE_REGISTRY[manager] = cls
        return cls
    return decorator


@dataclass(frozen=True)
class PendingCount:
    """Result of a lightweight pending-updates check."""
    total: int
    security: int = 0


class BulkPackageSource:
    """Base class for bulk package sources."""

    manager = ""

    def __init__(self, context: RunContext, comparator: VersionComparator) -> None:
        self.context = context
        self.comparator = comparator

    def pending_updates(self) -> Optional[PendingCount]:
        """Run the lightweight check; None means it failed or was inconclusive."""
        return None

    def integrity_issues(self) -> List[str]:
        """Packages the package database reports as broken; empty when healthy."""
        return []

    def outdated_packages(self) -> List[PackageUpdate]:
        """
        Run the full per-package pipeline.

        Raises:
            ProbeError: If the package manager cannot be queried
        """
        raise NotImplementedError

    def _run(self, argv: List[str], timeout: float) -> CommandResult:
        return self.context.runner.run(argv, timeout=timeout)

    def _is_newer(self, installed: str, candidate: str) -> bool:
        return installed != candidate and self.comparator.compare(installed, candidate) == Ordering.LESS


@register_bulk_source("apt")
class AptBulkSource(BulkPackageSource):
    """Debian/Ubuntu packages."""

    def pending_updates(self) -> Optional[PendingCount]:
        result = self._run([APT_CHECK_PATH], BULK_PRECHECK_TIMEOUT)
        if result.ok:
            # apt-check writes "total;security" to stderr
            text = (result.stderr.strip() or result.stdout.strip()).splitlines()
            match = re.match(r'^(\d+);(\d+)$', text[-1].strip()) if text else None
            if match:
                return PendingCount(total=int(match.group(1)), security=int(match.group(2)))
            logger.warning(f"Unable to parse apt-check output: {result.stderr.strip()!r}")
            return None

        if result.exit_code != EXIT_NOT_FOUND:
            # apt-check ran and failed: its silence proves nothing
            logger.warning(f"apt-check returned error code {result.exit_code}")
            return None
        return self._pending_from_apt_list()

    def _pending_from_apt_list(self) -> Optional[PendingCount]:
        result = self._run(["apt", "list", "--upgradable"], BULK_PRECHECK_TIMEOUT)
        if not result.ok:
            logger.debug(f"apt list --upgradable failed with {result.exit_code}")
            return None
        lines = [line for line in result.stdout.splitlines() if "upgradable from" in line]
        security = sum(1 for line in lines if "-security" in line)
        return PendingCount(total=len(lines), security=security)

    def integrity_issues(self) -> List[str]:
        """Packages ``dpkg --audit`` reports as broken or half configured."""
        result = self._run(["dpkg", "--audit"], BULK_PRECHECK_TIMEOUT)
        # Recent dpkg exits 1 when the audit finds problems
        if result.exit_code not in (0, 1):
            if result.exit_code != EXIT_NOT_FOUND:
                logger.warning(f"dpkg --audit returned error code {result.exit_code}")
            return []
        text = result.stdout.strip()
        if not text:
            return []
        # Package lines are indented below a paragraph explaining the problem
        names = [line.split()[0] for line in result.stdout.splitlines()
                 if line.startswith(" ") and line.strip()]
        return names or [text.splitlines()[0]]

    def _installed(self) -> Dict[str, str]:
        result = self._run(["dpkg-query", "-W", "-f=${db:Status-Status}\t${Package}\t${Version}\n"],
                           BULK_PIPELINE_TIMEOUT)
        if not result.ok:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR,
                             f"dpkg-query exited with {result.exit_code}: {result.stderr.strip()}")
        installed: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) == 3 and parts[0] == "installed" and parts[2]:
                installed.setdefault(parts[1], parts[2])
        return installed

    def outdated_packages(self) -> List[PackageUpdate]:
        installed = self._installed()
        names = sorted(installed)
        updates: List[PackageUpdate] = []

        for start in range(0, len(names), APT_POLICY_BATCH_SIZE):
            batch = names[start:start + APT_POLICY_BATCH_SIZE]
            result = self._run(["apt-cache", "policy", *batch], BULK_PIPELINE_TIMEOUT)
            if not result.ok:
                raise ProbeError(ProbeFailureKind.PARSE_ERROR,
                                 f"apt-cache policy exited with {result.exit_code}")
            policies = parse_apt_policy(result.stdout)
            for name in batch:
                policy = policies.get(name)
                if policy is None or policy.candidate is None:
                    continue
                current = installed[name]
                if self._is_newer(current, policy.candidate):
                    updates.append(PackageUpdate(
                        name=name,
                        current_version=current,
                        new_version=policy.candidate,
                        repository="security" if policy.security else None,
                        security=policy.security,
                    ))

        logger.info(f"Found {len(updates)} outdated APT packages")
        return updates


@register_bulk_source("pacman")
class PacmanBulkSource(BulkPackageSource):
    """Arch Linux packages."""

    def pending_updates(self) -> Optional[PendingCount]:
        # checkupdates syncs into a temporary database: exit 2 means nothing to do
        result = self._run(["checkupdates"], BULK_PRECHECK_TIMEOUT)
        if result.exit_code == 2 and not result.stdout.strip():
            return PendingCount(total=0)
        if result.ok:
            return PendingCount(total=sum(1 for line in result.stdout.splitlines() if _QU_LINE.match(line)))

        if result.exit_code != EXIT_NOT_FOUND:
            logger.warning(f"checkupdates returned error code {result.exit_code}")
            return None

        # pacman -Qu exits 1 both for "no updates" and for errors; only trust a silent 1
        result = self._run(["pacman", "-Qu"], BULK_PRECHECK_TIMEOUT)
        if result.ok:
            return PendingCount(total=sum(1 for line in result.stdout.splitlines() if _QU_LINE.match(line)))
        if result.exit_code == 1 and not result.stdout.strip() and not result.stderr.strip():
            return PendingCount(total=0)
        return None

    def outdated_packages(self) -> List[PackageUpdate]:
        local = self._run(["pacman", "-Q"], BULK_PIPELINE_TIMEOUT)
        if not local.ok:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"pacman -Q exited with {local.exit_code}")
        sync = self._run(["pacman", "-Sl"], BULK_PIPELINE_TIMEOUT)
        if not sync.ok:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"pacman -Sl exited with {sync.exit_code}")

        available: Dict[str, tuple] = {}
        for line in sync.stdout.splitlines():
            parts = line.split()
            # "<repo> <name> <version> [installed...]"
            if len(parts) >= 3:
                available.setdefault(parts[1], (parts[0], parts[2]))

        updates: List[PackageUpdate] = []
        for line in local.stdout.splitlines():
            parts = line.split()
            if len(parts) != 2 or parts[0] not in available:
                continue
            name, current = parts
            repository, candidate = available[name]
            if self._is_newer(current, candidate):
                updates.append(PackageUpdate(
                    name=name, current_version=current, new_version=candidate, repository=repository
                ))

        logger.info(f"Found {len(updates)} outdated Pacman packages")
        return updates


class ListingBulkSource(BulkPackageSource):
    """
    Source whose package manager lists outdated packages in one query.

    The listing doubles as the pending check: when it succeeds within the
    precheck timeout the result is kept, so the full pipeline does not ask
    again. A listing that fails or times out there is retried by the
    pipeline with the longer timeout.
    """

    tool = ""

    def __init__(self, context: RunContext, comparator: VersionComparator) -> None:
        super().__init__(context, comparator)
        self._updates: Optional[List[PackageUpdate]] = None

    def pending_updates(self) -> Optional[PendingCount]:
        try:
            self._updates = self._list_outdated(BULK_PRECHECK_TIMEOUT)
        except ProbeError as e:
            logger.debug(f"{self.manager} pending check failed: {e}")
            return None
        return PendingCount(total=len(self._updates))

    def outdated_packages(self) -> List[PackageUpdate]:
        if self._updates is None:
            self._updates = self._list_outdated(BULK_PIPELINE_TIMEOUT)
        logger.info(f"Found {len(self._updates)} outdated {self.manager} packages")
        return list(self._updates)

    def _list_outdated(self, timeout: float) -> List[PackageUpdate]:
        """
        Query the package manager.

        Raises:
            ProbeError: If the tool is missing or the query fails
        """
        raise NotImplementedError

    def _check(self, result: CommandResult, ok_codes: tuple = (0,)) -> None:
        if result.exit_code in ok_codes:
            return
        if result.exit_code == EXIT_NOT_FOUND:
            raise ProbeError(ProbeFailureKind.NOT_FOUND, f"{self.tool} is not installed")
        if result.exit_code == EXIT_TIMEOUT:
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR, f"{self.tool} timed out")
        # These tools fail mostly when the package index cannot be reached
        detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else ""
        raise ProbeError(ProbeFailureKind.NETWORK_ERROR,
                         f"{self.tool} exited with {result.exit_code}" + (f": {detail}" if detail else ""))

    def _load_json(self, text: str) -> Any:
        try:
            return json.loads(text)
        except ValueError as e:
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, f"invalid JSON from {self.tool}: {e}")


@register_bulk_source("npm")
class NpmGlobalBulkSource(ListingBulkSource):
    """Globally installed npm packages."""

    tool = "npm"

    def _list_outdated(self, timeout: float) -> List[PackageUpdate]:
        # npm outdated exits 1 when anything is outdated
        result = self._run(["npm", "outdated", "-g", "--depth=0", "--json"], timeout)
        self._check(result, ok_codes=(0, 1))
        text = result.stdout.strip()
        if not text:
            if result.exit_code == 0:
                return []
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR, f"npm outdated failed: {result.stderr.strip()}")

        data = self._load_json(text)
        if not isinstance(data, dict):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, "npm outdated did not return an object")
        if "error" in data:
            error = data["error"]
            summary = error.get("summary") if isinstance(error, dict) else error
            raise ProbeError(ProbeFailureKind.NETWORK_ERROR, f"npm outdated failed: {summary}")

        updates: List[PackageUpdate] = []
        for name, info in sorted(data.items()):
            if not isinstance(info, dict):
                continue
            current, latest = info.get("current"), info.get("latest")
            # Packages listed without a current version are missing, not outdated
            if not current or not latest:
                continue
            if self._is_newer(str(current), str(latest)):
                updates.append(PackageUpdate(name=name, current_version=str(current),
                                             new_version=str(latest), repository="npm"))
        return updates


# Distribution-managed modules that pip lists but apt owns
PIP_SYSTEM_PACKAGES = {"dbus-python", "pygobject", "distro-info", "python-apt"}


@register_bulk_source("pip")
class PipBulkSource(ListingBulkSource):
    """Python packages installed with pip."""

    tool = "pip3"

    def _list_outdated(self, timeout: float) -> List[PackageUpdate]:
        result = self._run(["pip3", "list", "--outdated", "--format=json",
                            "--disable-pip-version-check"], timeout)
        self._check(result)
        data = self._load_json(result.stdout.strip() or "[]")
        if not isinstance(data, list):
            raise ProbeError(ProbeFailureKind.PARSE_ERROR, "pip list did not return a list")

        updates: List[PackageUpdate] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            name, current, latest = item.get("name"), item.get("version"), item.get("latest_version")
            if not name or not current or not latest:
                continue
            if str(name).lower() in PIP_SYSTEM_PACKAGES:
                logger.debug(f"Skipping distribution-managed module {name}")
                continue
            if self._is_newer(str(current), str(latest)):
                updates.append(PackageUpdate(name=str(name), current_version=str(current),
                                             new_version=str(latest), repository="pypi"))
        return updates


_CARGO_LINE = re.compile(r'^(\S+)\s+v?(\S+)\s+v?(\S+)\s+(Yes|No)$')
_NO_SUCH_COMMAND = re.compile(r'no such (?:sub)?command')


@register_bulk_source("cargo")
class CargoBulkSource(ListingBulkSource):
    """Crates installed with ``cargo install``, checked through cargo-update."""

    tool = "cargo"

    def _list_outdated(self, timeout: float) -> List[PackageUpdate]:
        result = self._run(["cargo", "install-update", "--list"], timeout)
        if not result.ok and _NO_SUCH_COMMAND.search(result.stderr):
            raise ProbeError(ProbeFailureKind.NOT_FOUND,
                             "cargo-update is not installed (cargo install cargo-update)")
        self._check(result)

        updates: List[PackageUpdate] = []
        # "<crate>  v<installed>  v<latest>  Yes|No" below a header line
        for line in result.stdout.splitlines():
            match = _CARGO_LINE.match(line.strip())
            if match and match.group(4) == "Yes":
                updates.append(PackageUpdate(name=match.group(1), current_version=match.group(2),
                                             new_version=match.group(3), repository="crates.io"))
        return updates


@register_bulk_source("snap")
class SnapBulkSource(ListingBulkSource):
    """Snap packages."""

    tool = "snap"

    def _list_outdated(self, timeout: float) -> List[PackageUpdate]:
        # Prints "All snaps up to date." on stderr and nothing on stdout when done
        result = self._run(["snap", "refresh", "--list"], timeout)
        self._check(result)
        refreshes = self._table(result.stdout)
        if not refreshes:
            return []

        installed_result = self._run(["snap", "list"], timeout)
        self._check(installed_result)
        installed = self._table(installed_result.stdout)

        updates: List[PackageUpdate] = []
        for name, (version, revision) in refreshes.items():
            current = installed.get(name, ("unknown", ""))[0]
            # The store may publish a new revision of the same version
            new_version = version if version != current else f"{version} (rev {revision})"
            updates.append(PackageUpdate(name=name, current_version=current,
                                         new_version=new_version, repository="snap store"))
        return updates

    @staticmethod
    def _table(text: str) -> Dict[str, tuple]:
        """Parse "Name Version Rev ..." tables into name -> (version, revision)."""
        rows: Dict[str, tuple] = {}
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 3 or parts[0] == "Name":
                continue
            rows[parts[0]] = (parts[1], parts[2])
        return rows

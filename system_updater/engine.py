"""
Update decision engine.

One decision per target, with no state carried between targets::

    detect installed
      absent                    -> ABSENT
      version v -> probe latest
        failure                 -> PROBE_FAILED
        version w -> compare(v, w)
          GREATER or EQUAL      -> UP_TO_DATE
          LESS and security fix
               on a sensitive target -> SECURITY_UPDATE_AVAILABLE
          LESS                  -> UPDATE_AVAILABLE

Bulk OS-package targets first ask the package manager whether anything is
pending at all. Only a successful check reporting zero pending updates may
short-circuit to UP_TO_DATE; a failed check always falls through to the full
per-package pipeline.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from typing import Callable, Dict, Optional, Type

from .bulk import BULK_SOURCE_REGISTRY, BulkPackageSource, PendingCount
from .context import RunContext
from .detection import InstalledVersionDetector
from .models import (
    Decision, DecisionStatus, ProbeFailure, ProbeFailureKind, SourceDescriptor, Target
)
from .probes import ProbeError, SourceProbe, create_probe
from .utils.logger import get_logger
from .versioning import Ordering, VersionComparator, compare_commits

logger = get_logger(__name__)

ProbeFactory = Callable[[SourceDescriptor, RunContext], SourceProbe]


class UpdateDecisionEngine:
    """Combines detection, probing and comparison into a Decision."""

    def __init__(self, context: RunContext,
                 detector: Optional[InstalledVersionDetector] = None,
                 comparator: Optional[VersionComparator] = None,
                 probe_factory: ProbeFactory = create_probe,
                 bulk_sources: Optional[Dict[str, Type[BulkPackageSource]]] = None) -> None:
        """
        Initialize the engine.

        Args:
            context: Run context
            detector: Installed-version detector (built from the context if omitted)
            comparator: Version comparator (native tools enabled if omitted)
            probe_factory: Builds a probe for a source descriptor
            bulk_sources: Bulk source classes keyed by package manager
        """
        self.context = context
        self.detector = detector or InstalledVersionDetector(context)
        self.comparator = comparator or VersionComparator(context.runner)
        self.probe_factory = probe_factory
        self.bulk_sources = bulk_sources if bulk_sources is not None else BULK_SOURCE_REGISTRY

    def decide(self, target: Target) -> Decision:
        """
        Compute the decision for one target. Never raises.

        Args:
            target: Target to evaluate

        Returns:
            Decision for the target
        """
        try:
            if target.is_bulk:
                return self._decide_bulk(target)
            return self._decide_single(target)
        except Exception as e:
            logger.error(f"Unexpected error while deciding {target.id}: {e}", exc_info=True)
            failure = ProbeFailure(ProbeFailureKind.PARSE_ERROR, f"internal error: {e}", target.source.label)
            return Decision(target.id, DecisionStatus.PROBE_FAILED, failure=failure)

    def _decide_single(self, target: Target) -> Decision:
        installed = self.detector.detect_installed(target.detection)
        if installed is None:
            logger.debug(f"{target.id} is not installed")
            return Decision(target.id, DecisionStatus.ABSENT)

        result = self.probe_factory(target.source, self.context).resolve_latest(target)
        if not result.ok:
            return Decision(target.id, DecisionStatus.PROBE_FAILED,
                            installed=installed, failure=result.failure)

        latest = result.version
        if result.is_commit:
            ordering = compare_commits(installed, latest)
        else:
            ordering = self.comparator.compare(installed, latest)

        if ordering != Ordering.LESS:
            status = DecisionStatus.UP_TO_DATE
        elif target.security_sensitive and result.security:
            status = DecisionStatus.SECURITY_UPDATE_AVAILABLE
        else:
            status = DecisionStatus.UPDATE_AVAILABLE

        logger.debug(f"{target.id}: installed={installed} latest={latest} -> {status.value}")
        return Decision(target.id, status, installed=installed, latest=latest,
                        is_commit=result.is_commit)

    def _decide_bulk(self, target: Target) -> Decision:
        manager = target.source.params.get("manager")
        source_cls = self.bulk_sources.get(manager)
        if source_cls is None:
            failure = ProbeFailure(ProbeFailureKind.NOT_FOUND,
                                   f"no bulk source for package manager {manager!r}", target.source.label)
            return Decision(target.id, DecisionStatus.PROBE_FAILED, failure=failure)

        if self.detector.detect_installed(target.detection) is None:
            logger.debug(f"{manager} is not available, {target.id} is absent")
            return Decision(target.id, DecisionStatus.ABSENT)

        source = source_cls(self.context, self.comparator)
        issues = tuple(source.integrity_issues())
        if issues:
            logger.warning(f"{manager} reports {len(issues)} broken package(s): {', '.join(issues[:5])}")

        pending: Optional[PendingCount] = None
        if self.context.bulk_precheck:
            pending = source.pending_updates()
            if pending is None:
                logger.info(f"Pending-updates check for {manager} unavailable, checking every package")
            elif pending.total == 0:
                logger.info(f"No pending {manager} updates")
                return Decision(target.id, DecisionStatus.UP_TO_DATE, short_circuited=True,
                                integrity_issues=issues)

        try:
            packages = source.outdated_packages()
        except ProbeError as e:
            failure = ProbeFailure(e.kind, str(e), target.source.label)
            return Decision(target.id, DecisionStatus.PROBE_FAILED, failure=failure,
                            integrity_issues=issues)

        if not packages:
            return Decision(target.id, DecisionStatus.UP_TO_DATE, integrity_issues=issues)

        security_fix = any(p.security for p in packages) or (pending is not None and pending.security > 0)
        if target.security_sensitive and security_fix:
            status = DecisionStatus.SECURITY_UPDATE_AVAILABLE
        else:
            status = DecisionStatus.UPDATE_AVAILABLE

        return Decision(target.id, status, latest=f"{len(packages)} package(s)",
                        packages=tuple(packages), integrity_issues=issues)

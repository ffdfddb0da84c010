"""
Data models for System Updater.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum

from .constants import (
    DEFAULT_PROBE_TIMEOUT, DEFAULT_ACTION_TIMEOUT, DEFAULT_HISTORY_RETENTION_DAYS
)

# Source kind that marks a bulk OS-package target
BULK_SOURCE_KIND = "system_packages"


class DecisionStatus(Enum):
    """Verdict of the decision engine for one target."""
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    SECURITY_UPDATE_AVAILABLE = "security_update_available"
    ABSENT = "absent"
    PROBE_FAILED = "probe_failed"

    @property
    def wants_update(self) -> bool:
        """Whether the status calls for running the update action."""
        return self in (DecisionStatus.UPDATE_AVAILABLE, DecisionStatus.SECURITY_UPDATE_AVAILABLE)


class ProbeFailureKind(Enum):
    """Typed reasons a source probe can fail."""
    NETWORK_ERROR = "network_error"
    PARSE_ERROR = "parse_error"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"


class ConfirmationPolicy(Enum):
    """How update actions are confirmed."""
    ALWAYS_YES = "yes"
    ALWAYS_PROMPT = "prompt"
    DRY_RUN = "dry-run"

    @classmethod
    def from_string(cls, value: str) -> 'ConfirmationPolicy':
        """Parse a policy name, accepting a few spellings."""
        normalized = value.strip().lower().replace("_", "-")
        aliases = {"always-yes": "yes", "auto": "yes", "always-prompt": "prompt", "dryrun": "dry-run"}
        normalized = aliases.get(normalized, normalized)
        for policy in cls:
            if policy.value == normalized:
                return policy
        raise ValueError(f"Unknown confirmation policy: {value}")


@dataclass(frozen=True)
class CommandResult:
    """Outcome of running one command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True if the command exited with status 0."""
        return self.exit_code == 0


@dataclass(frozen=True)
class ProbeFailure:
    """Typed failure returned by a source probe."""
    kind: ProbeFailureKind
    message: str
    source: str = ""

    def __str__(self) -> str:
        """String representation."""
        return f"{self.kind.value} from {self.source or 'unknown source'}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"kind": self.kind.value, "message": self.message, "source": self.source}


@dataclass(frozen=True)
class ProbeResult:
    """Latest version (or commit) reported by one source, or a typed failure."""
    source: str
    version: Optional[str] = None
    failure: Optional[ProbeFailure] = None
    is_commit: bool = False
    security: bool = False

    def __post_init__(self) -> None:
        """Exactly one of version and failure must be set."""
        if (self.version is None) == (self.failure is None):
            raise ValueError("ProbeResult needs exactly one of version or failure")

    @classmethod
    def resolved(cls, source: str, version: str, is_commit: bool = False,
                 security: bool = False) -> 'ProbeResult':
        """Create a successful result."""
        return cls(source=source, version=version, is_commit=is_commit, security=security)

    @classmethod
    def failed(cls, source: str, kind: ProbeFailureKind, message: str) -> 'ProbeResult':
        """Create a failed result."""
        return cls(source=source, failure=ProbeFailure(kind=kind, message=message, source=source))

    @property
    def ok(self) -> bool:
        """True if a version was resolved."""
        return self.failure is None


@dataclass(frozen=True)
class DetectionRule:
    """How to read the installed version of a target."""
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"kind": self.kind, "params": dict(self.params)}


@dataclass(frozen=True)
class SourceDescriptor:
    """Which upstream to query for the latest version, and how."""
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        """Short human-readable source label used in reports."""
        for key in ("package", "repo", "url", "manager"):
            if key in self.params:
                value = self.params[key]
                if key == "repo" and "owner" in self.params:
                    value = f"{self.params['owner']}/{value}"
                return f"{self.kind}:{value}"
        return self.kind

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"kind": self.kind, "params": dict(self.params)}


@dataclass(frozen=True)
class ActionReference:
    """Opaque handle to the external routine that updates a target."""
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"kind": self.kind, "params": dict(self.params)}


@dataclass(frozen=True)
class Target:
    """A unit of update management, immutable for the duration of a run."""
    id: str
    display_name: str
    detection: DetectionRule
    source: SourceDescriptor
    update_action: Optional[ActionReference] = None
    enabled: bool = True
    security_sensitive: bool = False
    origin: str = ""

    @property
    def is_bulk(self) -> bool:
        """True for the bulk OS-package target."""
        return self.source.kind == BULK_SOURCE_KIND

    def with_enabled(self, enabled: bool) -> 'Target':
        """Return a copy with a different enabled flag."""
        return replace(self, enabled=enabled)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "displayName": self.display_name,
            "detection": self.detection.to_dict(),
            "source": self.source.to_dict(),
            "updateAction": self.update_action.to_dict() if self.update_action else None,
            "enabled": self.enabled,
            "securitySensitive": self.security_sensitive,
        }


@dataclass(frozen=True)
class PackageUpdate:
    """Represents one outdated package of a bulk target."""

    name: str
    current_version: str
    new_version: str
    repository: Optional[str] = None
    security: bool = False

    def __post_init__(self) -> None:
        """Validate package update data."""
        if not self.name:
            raise ValueError("Package name cannot be empty")
        if not self.current_version:
            raise ValueError("Current version cannot be empty")
        if not self.new_version:
            raise ValueError("New version cannot be empty")

    def __str__(self) -> str:
        """String representation."""
        return f"{self.name} {self.current_version} -> {self.new_version}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "current_version": self.current_version,
            "new_version": self.new_version,
            "repository": self.repository,
            "security": self.security,
        }


@dataclass(frozen=True)
class Decision:
    """Engine verdict for one target; never mutated after creation."""
    target_id: str
    status: DecisionStatus
    installed: Optional[str] = None
    latest: Optional[str] = None
    failure: Optional[ProbeFailure] = None
    is_commit: bool = False
    short_circuited: bool = False
    packages: Tuple[PackageUpdate, ...] = ()
    integrity_issues: Tuple[str, ...] = ()  # broken or half-configured packages

    @property
    def wants_update(self) -> bool:
        """Whether the update action should be offered."""
        return self.status.wants_update

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target_id": self.target_id,
            "status": self.status.value,
            "installed": self.installed,
            "latest": self.latest,
            "failure": self.failure.to_dict() if self.failure else None,
            "is_commit": self.is_commit,
            "short_circuited": self.short_circuited,
            "packages": [p.to_dict() for p in self.packages],
            "integrity_issues": list(self.integrity_issues),
        }


@dataclass(frozen=True)
class ActionOutcome:
    """Result of invoking an update action."""
    success: bool
    message: str = ""
    exit_code: Optional[int] = None
    duration_sec: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "message": self.message,
            "exit_code": self.exit_code,
            "duration_sec": round(self.duration_sec, 3),
        }


@dataclass
class RunReportEntry:
    """One line of the run report."""
    target_id: str
    display_name: str
    decision: Optional[Decision] = None
    action: Optional[ActionOutcome] = None
    skipped: Optional[str] = None  # disabled, declined, dry-run, interrupted, no-action
    verified: Optional[bool] = None  # result of the post-update re-probe

    @property
    def status(self) -> Optional[DecisionStatus]:
        """Decision status, if a decision was computed."""
        return self.decision.status if self.decision else None

    @property
    def probe_failed(self) -> bool:
        """True if the decision is PROBE_FAILED."""
        return self.status == DecisionStatus.PROBE_FAILED

    @property
    def action_failed(self) -> bool:
        """True if an action ran and failed."""
        return self.action is not None and not self.action.success

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target_id": self.target_id,
            "display_name": self.display_name,
            "status": self.status.value if self.status else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "action": self.action.to_dict() if self.action else None,
            "skipped": self.skipped,
            "verified": self.verified,
        }


@dataclass
class RunReport:
    """Ordered outcome of one orchestrator run."""
    policy: ConfirmationPolicy
    entries: List[RunReportEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    interrupted: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def probe_failures(self) -> List[RunReportEntry]:
        """Entries whose probe failed."""
        return [e for e in self.entries if e.probe_failed]

    @property
    def action_failures(self) -> List[RunReportEntry]:
        """Entries whose update action failed."""
        return [e for e in self.entries if e.action_failed]

    @property
    def verification_failures(self) -> List[RunReportEntry]:
        """Entries still outdated after a successful action."""
        return [e for e in self.entries if e.verified is False]

    @property
    def integrity_failures(self) -> List[RunReportEntry]:
        """Entries whose package database reported broken packages."""
        return [e for e in self.entries if e.decision is not None and e.decision.integrity_issues]

    @property
    def updated(self) -> List[RunReportEntry]:
        """Entries whose update action succeeded."""
        return [e for e in self.entries if e.action is not None and e.action.success]

    @property
    def pending(self) -> List[RunReportEntry]:
        """Entries with an available update that was not applied."""
        return [e for e in self.entries
                if e.decision is not None and e.decision.wants_update and e.action is None]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "policy": self.policy.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "interrupted": self.interrupted,
            "warnings": list(self.warnings),
            "entries": [e.to_dict() for e in self.entries],
            "summary": {
                "targets": len(self.entries),
                "updated": len(self.updated),
                "pending": len(self.pending),
                "probe_failures": len(self.probe_failures),
                "action_failures": len(self.action_failures),
                "verification_failures": len(self.verification_failures),
                "integrity_failures": len(self.integrity_failures),
            },
        }


@dataclass
class AppConfig:
    """Application configuration."""
    targets_dirs: List[str] = field(default_factory=list)
    disabled_targets: List[str] = field(default_factory=list)
    confirmation_policy: str = "prompt"
    probe_timeout: int = DEFAULT_PROBE_TIMEOUT
    action_timeout: int = DEFAULT_ACTION_TIMEOUT
    github_token: Optional[str] = None
    verify_after_update: bool = True
    bulk_precheck: bool = True
    history_enabled: bool = False
    history_retention_days: int = DEFAULT_HISTORY_RETENTION_DAYS
    debug_mode: bool = False
    verbose_logging: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "targets_dirs": list(self.targets_dirs),
            "disabled_targets": list(self.disabled_targets),
            "confirmation_policy": self.confirmation_policy,
            "probe_timeout": self.probe_timeout,
            "action_timeout": self.action_timeout,
            "github_token": self.github_token,
            "verify_after_update": self.verify_after_update,
            "bulk_precheck": self.bulk_precheck,
            "history_enabled": self.history_enabled,
            "history_retention_days": self.history_retention_days,
            "debug_mode": self.debug_mode,
            "verbose_logging": self.verbose_logging,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        """Create from dictionary."""
        return cls(
            targets_dirs=data.get("targets_dirs", []),
            disabled_targets=data.get("disabled_targets", []),
            confirmation_policy=data.get("confirmation_policy", "prompt"),
            probe_timeout=data.get("probe_timeout", DEFAULT_PROBE_TIMEOUT),
            action_timeout=data.get("action_timeout", DEFAULT_ACTION_TIMEOUT),
            github_token=data.get("github_token"),
            verify_after_update=data.get("verify_after_update", True),
            bulk_precheck=data.get("bulk_precheck", True),
            history_enabled=data.get("history_enabled", False),
            history_retention_days=data.get("history_retention_days", DEFAULT_HISTORY_RETENTION_DAYS),
            debug_mode=data.get("debug_mode", False),
            verbose_logging=data.get("verbose_logging", False)
        )

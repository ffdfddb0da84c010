"""
Update history for actions run by the orchestrator.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import csv
import fcntl
import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from ..constants import get_cache_dir, DEFAULT_HISTORY_RETENTION_DAYS
from .logger import get_logger

logger = get_logger(__name__)

MAX_HISTORY_ENTRIES = 10000


@dataclass
class UpdateHistoryEntry:
    """One update action attempted for one target."""
    timestamp: datetime            # when the action finished
    target_id: str
    succeeded: bool
    exit_code: Optional[int]       # None when the action never started
    duration_sec: float
    installed: Optional[str] = None  # version before the action
    latest: Optional[str] = None     # version the action aimed for
    verified: Optional[bool] = None  # outcome of the post-update re-probe

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "target_id": self.target_id,
            "succeeded": self.succeeded,
            "exit_code": self.exit_code,
            "duration_sec": self.duration_sec,
            "installed": self.installed,
            "latest": self.latest,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'UpdateHistoryEntry':
        """Create from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            target_id=data["target_id"],
            succeeded=data["succeeded"],
            exit_code=data.get("exit_code"),
            duration_sec=data.get("duration_sec", 0.0),
            installed=data.get("installed"),
            latest=data.get("latest"),
            verified=data.get("verified"),
        )


class UpdateHistoryManager:
    """Manages update history storage and retrieval."""

    def __init__(self, path: Optional[str] = None,
                 retention_days: int = DEFAULT_HISTORY_RETENTION_DAYS):
        """
        Initialize the update history manager.

        Args:
            path: Path to history file (defaults to cache dir)
            retention_days: Days to retain history entries
        """
        if path is None:
            path = str(get_cache_dir() / "update_history.json")
        self.path = Path(path)
        self.retention_days = retention_days
        self._lock = threading.Lock()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Initialized UpdateHistoryManager with path: {self.path}")

    def all(self) -> List[UpdateHistoryEntry]:
        """
        Get all update history entries.

        Returns:
            List of update history entries (newest first)
        """
        with self._lock:
            entries = self._load_entries()
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    def add(self, entry: UpdateHistoryEntry) -> None:
        """
        Add a new update history entry.

        A history write failure is logged and never aborts the run.

        Args:
            entry: The update history entry to add
        """
        with self._lock:
            try:
                entries = self._load_entries()
                entries.append(entry)
                self._save_entries(entries)
                logger.debug(f"Added update history entry for {entry.target_id}, exit code: {entry.exit_code}")
            except OSError as e:
                logger.error(f"Failed to add update history entry: {e}")

    def clear(self) -> None:
        """Clear all update history entries."""
        with self._lock:
            self._save_entries([])
            logger.info("Cleared update history")

    def export(self, filename: str, format_: str = "json") -> int:
        """
        Export update history to file.

        Args:
            filename: Destination file path
            format_: Export format (json or csv)

        Returns:
            Number of exported entries
        """
        entries = self.all()

        if format_ == "json":
            with open(filename, 'w') as f:
                json.dump([entry.to_dict() for entry in entries], f, indent=2)
        elif format_ == "csv":
            with open(filename, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(['timestamp', 'target', 'installed', 'latest',
                                 'succeeded', 'exit_code', 'duration_sec', 'verified'])
                for entry in entries:
                    writer.writerow([
                        entry.timestamp.isoformat(),
                        entry.target_id,
                        entry.installed or '',
                        entry.latest or '',
                        'Yes' if entry.succeeded else 'No',
                        '' if entry.exit_code is None else entry.exit_code,
                        f"{entry.duration_sec:.1f}",
                        '' if entry.verified is None else ('Yes' if entry.verified else 'No'),
                    ])
        else:
            raise ValueError(f"Unsupported export format: {format_}")

        logger.info(f"Exported {len(entries)} entries to {filename}")
        return len(entries)

    def _load_entries(self) -> List[UpdateHistoryEntry]:
        """Load entries from disk with file locking."""
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            return self._trim_entries([UpdateHistoryEntry.from_dict(d) for d in data])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Corrupted history file: {e}")
            return []
        except OSError as e:
            logger.error(f"Failed to load update history: {e}")
            return []

    def _save_entries(self, entries: List[UpdateHistoryEntry]) -> None:
        """Save entries to disk with file locking and an atomic rename."""
        entries = self._trim_entries(entries)
        data = [entry.to_dict() for entry in entries]

        temp_path = self.path.with_suffix('.tmp')
        try:
            with open(temp_path, 'w') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            temp_path.replace(self.path)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def _trim_entries(self, entries: List[UpdateHistoryEntry]) -> List[UpdateHistoryEntry]:
        """
        Drop entries older than the retention window and cap the entry count.

        Args:
            entries: List of entries to trim

        Returns:
            Trimmed list of entries
        """
        cutoff = datetime.now() - timedelta(days=self.retention_days)
        entries = [e for e in entries if e.timestamp > cutoff]
        if len(entries) > MAX_HISTORY_ENTRIES:
            entries = sorted(entries, key=lambda e: e.timestamp)[-MAX_HISTORY_ENTRIES:]
        return entries

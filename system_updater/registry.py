"""
Target registry: loads declarative target descriptors from JSON files.

A descriptor looks like::

    {
      "id": "kitty",
      "displayName": "Kitty terminal",
      "detection": {"kind": "command", "command": ["kitty", "--version"]},
      "source": {"kind": "github", "params": {"owner": "kovidgoyal", "repo": "kitty"}},
      "updateAction": {"kind": "command", "command": ["sh", "-c", "..."]},
      "securitySensitive": false,
      "enabled": true
    }

``detection``, ``source`` and ``updateAction`` take their parameters either
under ``params`` or inline next to ``kind``. snake_case spellings of the
top-level keys are accepted too.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .actions import ACTION_REGISTRY
from .bulk import BULK_SOURCE_REGISTRY
from .constants import MAX_DESCRIPTOR_SIZE
from .detection import DETECTOR_REGISTRY
from .exceptions import ConfigurationError
from .models import BULK_SOURCE_KIND, ActionReference, DetectionRule, SourceDescriptor, Target
from .probes import PROBE_REGISTRY
from .utils.logger import get_logger
from .utils.validators import validate_target_id

logger = get_logger(__name__)

_KEY_ALIASES = {
    "displayName": "display_name",
    "securitySensitive": "security_sensitive",
    "updateAction": "update_action",
}


def _split_kind(value: Any, field_name: str) -> Tuple[str, Dict[str, Any]]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{field_name}' must be an object")
    kind = value.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ConfigurationError(f"'{field_name}' needs a 'kind'")
    if "params" in value:
        params = value["params"]
        if not isinstance(params, dict):
            raise ConfigurationError(f"'{field_name}.params' must be an object")
    else:
        params = {k: v for k, v in value.items() if k != "kind"}
    return kind, dict(params)


def _bool_field(data: Dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{key}' must be true or false")
    return value


def parse_descriptor(data: Any, origin: str = "") -> Target:
    """
    Build a Target from a descriptor record.

    Args:
        data: Parsed JSON object
        origin: Where the descriptor came from, for messages

    Returns:
        Target

    Raises:
        ConfigurationError: If the descriptor is malformed
    """
    if not isinstance(data, dict):
        raise ConfigurationError("descriptor must be a JSON object", origin)
    data = {_KEY_ALIASES.get(k, k): v for k, v in data.items()}

    target_id = data.get("id")
    if not validate_target_id(target_id):
        raise ConfigurationError(f"invalid or missing id: {target_id!r}", origin)

    try:
        display_name = data.get("display_name", target_id)
        if not isinstance(display_name, str) or not display_name.strip():
            raise ConfigurationError("'displayName' must be a non-empty string")

        if "detection" not in data:
            raise ConfigurationError("'detection' is required")
        detection_kind, detection_params = _split_kind(data["detection"], "detection")
        detector_cls = DETECTOR_REGISTRY.get(detection_kind)
        if detector_cls is None:
            raise ConfigurationError(f"unknown detection kind '{detection_kind}'")
        detector_cls.validate(detection_params)

        if "source" not in data:
            raise ConfigurationError("'source' is required")
        source_kind, source_params = _split_kind(data["source"], "source")
        if source_kind == BULK_SOURCE_KIND:
            if source_params.get("manager") not in BULK_SOURCE_REGISTRY:
                raise ConfigurationError(
                    f"'{BULK_SOURCE_KIND}' needs manager in {sorted(BULK_SOURCE_REGISTRY)}")
        else:
            probe_cls = PROBE_REGISTRY.get(source_kind)
            if probe_cls is None:
                raise ConfigurationError(f"unknown source kind '{source_kind}'")
            probe_cls.validate(source_params)

        action: Optional[ActionReference] = None
        if data.get("update_action") is not None:
            action_kind, action_params = _split_kind(data["update_action"], "updateAction")
            action_cls = ACTION_REGISTRY.get(action_kind)
            if action_cls is None:
                raise ConfigurationError(f"unknown action kind '{action_kind}'")
            action_cls.validate(action_params)
            action = ActionReference(kind=action_kind, params=action_params)

        return Target(
            id=target_id,
            display_name=display_name.strip(),
            detection=DetectionRule(kind=detection_kind, params=detection_params),
            source=SourceDescriptor(kind=source_kind, params=source_params),
            update_action=action,
            enabled=_bool_field(data, "enabled", True),
            security_sensitive=_bool_field(data, "security_sensitive", False),
            origin=origin,
        )
    except ConfigurationError as e:
        raise ConfigurationError(f"target '{target_id}': {e.args[0]}", origin)


class TargetRegistry:
    """Owns the ordered set of targets for one run."""

    def __init__(self, disabled: Iterable[str] = ()) -> None:
        """
        Initialize an empty registry.

        Args:
            disabled: Target ids to load as disabled
        """
        self.disabled: Set[str] = set(disabled)
        self.warnings: List[str] = []
        self._targets: List[Target] = []
        self._by_id: Dict[str, Target] = {}

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    @property
    def targets(self) -> List[Target]:
        """Targets in discovery order."""
        return list(self._targets)

    def get(self, target_id: str) -> Optional[Target]:
        """Look up a target by id."""
        return self._by_id.get(target_id)

    def _warn(self, message: str) -> None:
        logger.warning(f"Skipping target descriptor: {message}")
        self.warnings.append(message)

    def _add(self, target: Target) -> bool:
        if target.id in self._by_id:
            self._warn(f"{target.origin}: duplicate target id '{target.id}' "
                       f"(already defined in {self._by_id[target.id].origin})")
            return False
        if target.id in self.disabled:
            target = target.with_enabled(False)
        self._targets.append(target)
        self._by_id[target.id] = target
        return True

    def load_file(self, path: Union[str, Path]) -> List[Target]:
        """
        Load one descriptor file holding an object or a list of objects.

        Returns:
            Targets added from this file
        """
        path = Path(path)
        origin = path.name
        try:
            size = path.stat().st_size
            if size > MAX_DESCRIPTOR_SIZE:
                self._warn(f"{origin}: file too large ({size} bytes)")
                return []
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            self._warn(f"{origin}: invalid JSON: {e}")
            return []
        except (OSError, UnicodeDecodeError) as e:
            self._warn(f"{origin}: cannot read file: {e}")
            return []

        records = data if isinstance(data, list) else [data]
        added: List[Target] = []
        for index, record in enumerate(records):
            record_origin = origin if len(records) == 1 else f"{origin}[{index}]"
            try:
                target = parse_descriptor(record, record_origin)
            except ConfigurationError as e:
                self._warn(str(e))
                continue
            if self._add(target):
                added.append(target)
        return added

    def load_all(self, directory: Union[str, Path]) -> List[Target]:
        """
        Load every ``*.json`` descriptor in a directory, in sorted filename order.

        Malformed descriptors are skipped and recorded in ``warnings``.

        Args:
            directory: Directory of descriptor files

        Returns:
            Targets added from this directory, in load order
        """
        directory = Path(directory)
        if not directory.is_dir():
            self._warn(f"{directory}: not a directory")
            return []

        added: List[Target] = []
        for path in sorted(directory.glob("*.json"), key=lambda p: p.name):
            if path.is_file():
                added.extend(self.load_file(path))
        logger.debug(f"Loaded {len(added)} targets from {directory}")
        return added

    def load_directories(self, directories: Iterable[Union[str, Path]],
                         optional: Iterable[Union[str, Path]] = ()) -> List[Target]:
        """
        Load several directories in order.

        Args:
            directories: Directories that must exist
            optional: Directories silently skipped when missing

        Returns:
            All targets in the registry
        """
        optional_set = {os.path.abspath(str(d)) for d in optional}
        for directory in directories:
            if os.path.abspath(str(directory)) in optional_set and not Path(directory).is_dir():
                logger.debug(f"Optional targets directory {directory} does not exist")
                continue
            self.load_all(directory)
        return self.targets

    def select(self, only: Optional[Iterable[str]]) -> List[Target]:
        """
        Restrict the run to the given ids, keeping registry order.

        Raises:
            ConfigurationError: If an id is not registered
        """
        if not only:
            return self.targets
        wanted = list(only)
        unknown = [target_id for target_id in wanted if target_id not in self._by_id]
        if unknown:
            raise ConfigurationError(f"Unknown target(s): {', '.join(unknown)}")
        return [t for t in self._targets if t.id in set(wanted)]

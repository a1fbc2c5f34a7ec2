"""State file: remote ids and last applied specs of managed objects.

The state file is what lets the next run find an object by id and diff
against what was actually applied, instead of guessing from the name. It is
a YAML document keyed by manifest address:

    version: 1
    resources:
      image/base-image:
        kind: image
        key: base-image
        id: 42
        spec: {name: base-image, permissions: "640", datastoreId: 1}

A missing file is an empty state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import BaseResourceSpec, get_spec_class

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateFileError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


@dataclass
class ResourceState:
    """What is known about one managed object."""

    kind: str
    key: str
    object_id: int | None = None
    baseline: BaseResourceSpec | None = None

    @property
    def address(self) -> str:
        return f"{self.kind}/{self.key}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "key": self.key, "id": self.object_id}
        if self.baseline is not None:
            data["spec"] = self.baseline.model_dump(mode="json", by_alias=True)
        return data

    @classmethod
    def from_dict(cls, address: str, data: Any) -> ResourceState:
        if not isinstance(data, dict):
            raise StateFileError(f"State entry '{address}' must be a mapping")

        kind = data.get("kind")
        key = data.get("key")
        if not isinstance(kind, str) or not isinstance(key, str):
            raise StateFileError(f"State entry '{address}' needs string 'kind' and 'key'")

        object_id = data.get("id")
        if object_id is not None and (isinstance(object_id, bool) or not isinstance(object_id, int)):
            raise StateFileError(f"State entry '{address}' has a non-integer id: {object_id!r}")

        baseline = None
        raw_spec = data.get("spec")
        if raw_spec is not None:
            try:
                baseline = get_spec_class(kind).model_validate(raw_spec)
            except (ValueError, ValidationError) as e:
                raise StateFileError(f"State entry '{address}' has an invalid spec: {e}") from e

        return cls(kind=kind, key=key, object_id=object_id, baseline=baseline)


@dataclass
class StateStore:
    """In-memory view of a state file."""

    resources: dict[str, ResourceState] = field(default_factory=dict)

    def get(self, kind: str, key: str) -> ResourceState | None:
        return self.resources.get(f"{kind}/{key}")

    def record(
        self,
        kind: str,
        key: str,
        object_id: int | None,
        baseline: BaseResourceSpec | None,
    ) -> ResourceState:
        entry = ResourceState(kind=kind, key=key, object_id=object_id, baseline=baseline)
        self.resources[entry.address] = entry
        return entry

    def forget(self, kind: str, key: str) -> ResourceState | None:
        return self.resources.pop(f"{kind}/{key}", None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "resources": {addr: entry.to_dict() for addr, entry in self.resources.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> StateStore:
        if not isinstance(data, dict):
            raise StateFileError("State file must contain a YAML mapping")

        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateFileError(
                f"Unsupported state file version {version!r} (expected {STATE_FORMAT_VERSION})"
            )

        raw_resources = data.get("resources")
        if raw_resources is None:
            raw_resources = {}
        if not isinstance(raw_resources, dict):
            raise StateFileError("State file 'resources' must be a mapping")

        store = cls()
        for address, raw in raw_resources.items():
            entry = ResourceState.from_dict(str(address), raw)
            store.resources[entry.address] = entry
        return store


def load_state(path: Path) -> StateStore:
    """Load the state file, or an empty state if it does not exist.

    Raises:
        StateFileError: If the file is too large, unreadable or malformed.
    """
    if not path.exists():
        logger.info("No state file, starting from empty state", extra={"path": str(path)})
        return StateStore()

    try:
        file_size = path.stat().st_size
        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateFileError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
            )
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StateFileError(f"Failed to read state file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StateFileError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return StateStore()
    return StateStore.from_dict(raw_data)


def save_state(path: Path, store: StateStore) -> None:
    """Write the state file, replacing the previous one atomically.

    Raises:
        StateFileError: If the file cannot be written.
    """
    content = yaml.safe_dump(store.to_dict(), sort_keys=True, default_flow_style=False)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(path)
    except OSError as e:
        raise StateFileError(f"Failed to write state file {path}: {e}") from e
    logger.debug("Saved state", extra={"path": str(path), "resources": len(store.resources)})

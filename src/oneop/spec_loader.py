"""Manifest loading with validation.

A manifest declares the objects to reconcile, in dependency order. Two
layouts are accepted:

Flat list:

    - kind: image
      name: base-image
      datastoreId: 1
      permissions: "640"

Kubernetes-style wrapper:

    apiVersion: oneop/v1
    kind: Manifest
    spec:
      resources:
        - kind: vnet
          ...

Every entry carries a kind and the kind's spec fields, plus an optional key
that identifies the entry in the state file. The key defaults to the name;
setting it explicitly lets an object be renamed without losing its state.

SECURITY: File size is checked before reading and YAML is parsed with
safe_load.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import BaseResourceSpec, get_spec_class

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


@dataclass(frozen=True)
class ManifestEntry:
    """One declared object: its kind, state key and validated spec."""

    kind: str
    key: str
    spec: BaseResourceSpec

    @property
    def address(self) -> str:
        """Unique address of the entry, e.g. image/base-image."""
        return f"{self.kind}/{self.key}"


def _format_validation_error(prefix: str, error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {prefix}.{loc}: {item['msg']}" if loc else f"  - {prefix}: {item['msg']}")
    return "\n".join(lines)


def parse_entry(index: int, raw: Any) -> ManifestEntry:
    """Validate one manifest entry.

    Raises:
        SpecLoadError: If the entry is malformed or fails validation.
    """
    where = f"resources[{index}]"
    if not isinstance(raw, dict):
        raise SpecLoadError(f"{where} must be a mapping")

    data = dict(raw)
    kind = data.pop("kind", None)
    if not isinstance(kind, str):
        raise SpecLoadError(f"{where} is missing 'kind'")

    key = data.pop("key", None)

    try:
        spec_class = get_spec_class(kind)
    except ValueError as e:
        raise SpecLoadError(f"{where}: {e}") from e

    try:
        spec = spec_class.model_validate(data)
    except ValidationError as e:
        details = _format_validation_error(where, e)
        raise SpecLoadError(f"Validation failed for {where} ({kind}):\n{details}") from e

    if key is None:
        key = spec.name
    elif not isinstance(key, str) or not key.strip():
        raise SpecLoadError(f"{where}.key must be a non-empty string")

    return ManifestEntry(kind=kind, key=key, spec=spec)


def parse_manifest(raw_data: Any, source: str = "<manifest>") -> list[ManifestEntry]:
    """Validate already parsed manifest data.

    Raises:
        SpecLoadError: If the layout is wrong, an entry is invalid or two
            entries share an address.
    """
    # Support both a flat list and a Kubernetes-style wrapper
    if isinstance(raw_data, dict) and "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        resources = spec_data.get("resources", [])
    elif isinstance(raw_data, dict):
        resources = raw_data.get("resources", [])
    else:
        resources = raw_data

    if resources is None:
        resources = []
    if not isinstance(resources, list):
        raise SpecLoadError(f"Manifest resources must be a list: {source}")

    entries: list[ManifestEntry] = []
    seen: set[str] = set()
    for index, raw in enumerate(resources):
        entry = parse_entry(index, raw)
        if entry.address in seen:
            raise SpecLoadError(f"Duplicate manifest entry '{entry.address}' in {source}")
        seen.add(entry.address)
        entries.append(entry)

    return entries


def load_manifest(path: Path) -> list[ManifestEntry]:
    """Load and validate a manifest from YAML.

    Args:
        path: Manifest file.

    Returns:
        Validated entries, in manifest order.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raise SpecLoadError(f"Manifest file is empty: {path}")

    entries = parse_manifest(raw_data, str(path))
    logger.info("Loaded %d manifest entries from %s", len(entries), path)
    return entries

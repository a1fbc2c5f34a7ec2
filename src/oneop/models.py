"""Pydantic models for desired object specifications.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary, before any remote call is made
3. A stable shape for diffing old and new desired state
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_OBJECT_NAME_LENGTH
from .permissions import PermissionSet
from .permissions import ValidationError as PermissionValidationError
from .permissions import decode as decode_permissions

# =============================================================================
# Base Model
# =============================================================================


class BaseResourceSpec(BaseModel):
    """Fields shared by every reconciled object kind."""

    model_config = {"extra": "forbid", "populate_by_name": True, "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_OBJECT_NAME_LENGTH)]
    description: str = ""

    # Unix-style owner-group-other digits, e.g. "640"
    permissions: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v != v.strip():
            raise ValueError("name cannot have leading or trailing whitespace")
        if any(ord(c) < 32 for c in v):
            raise ValueError("name cannot contain control characters")
        return v

    @field_validator("permissions", mode="before")
    @classmethod
    def validate_permissions(cls, v: object) -> str:
        # YAML reads 640 as an int; 0-prefixed values must be quoted
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            raise ValueError("permissions must be a 3-digit string")
        try:
            decode_permissions(v)
        except PermissionValidationError as e:
            raise ValueError(str(e)) from e
        return v

    @property
    def permission_set(self) -> PermissionSet:
        return decode_permissions(self.permissions)

    @property
    def clone_source(self) -> int | None:
        """Id of the object to clone from, for kinds that support cloning."""
        return None


# =============================================================================
# Template
# =============================================================================


class TemplateSpec(BaseResourceSpec):
    """VM template. description is the template body in OpenNebula syntax."""

    description: str
    clone_from_id: Annotated[int | None, Field(ge=0, alias="cloneFromId")] = None

    @property
    def clone_source(self) -> int | None:
        return self.clone_from_id


# =============================================================================
# Image
# =============================================================================


class ImageSpec(BaseResourceSpec):
    """Disk image, allocated in a datastore or cloned from another image."""

    datastore_id: Annotated[int, Field(ge=0, alias="datastoreId")]
    clone_from_id: Annotated[int | None, Field(ge=0, alias="cloneFromId")] = None

    @property
    def clone_source(self) -> int | None:
        return self.clone_from_id


# =============================================================================
# Virtual Network
# =============================================================================


class VnetSpec(BaseResourceSpec):
    """Virtual network with one IPv4 address range and optional reservations."""

    bridge: Annotated[str, Field(min_length=1, max_length=15)]
    ip_start: str = Field(alias="ipStart")
    ip_size: Annotated[int, Field(ge=1, alias="ipSize")]
    reservation_size: Annotated[int, Field(ge=0, alias="reservationSize")] = 0
    # hold: one hold call per address; reserve: one reservation network of that size
    reservation_mode: Literal["hold", "reserve"] = Field("hold", alias="reservationMode")
    reservation_name: str | None = Field(None, alias="reservationName")

    @field_validator("ip_start")
    @classmethod
    def validate_ip_start(cls, v: str) -> str:
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"ip_start must be an IPv4 address: {v}") from e
        return v

    @field_validator("bridge")
    @classmethod
    def validate_bridge(cls, v: str) -> str:
        if any(c.isspace() or c in "\"'" for c in v):
            raise ValueError("bridge must be an interface name")
        return v

    @model_validator(mode="after")
    def validate_reservation(self) -> VnetSpec:
        if self.reservation_size > self.ip_size:
            raise ValueError("reservation_size cannot exceed ip_size")
        last = int(ipaddress.IPv4Address(self.ip_start)) + self.ip_size - 1
        if last > int(ipaddress.IPv4Address("255.255.255.255")):
            raise ValueError("address range runs past 255.255.255.255")
        return self


# =============================================================================
# Registry
# =============================================================================

SPEC_REGISTRY: dict[str, type[BaseResourceSpec]] = {
    "template": TemplateSpec,
    "image": ImageSpec,
    "vnet": VnetSpec,
}


def get_spec_class(kind: str) -> type[BaseResourceSpec]:
    """Get the spec class for an object kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    spec_class = SPEC_REGISTRY.get(kind)
    if spec_class is None:
        valid_kinds = list(SPEC_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return spec_class

"""Decoding of OpenNebula documents into observed object records.

pyone parses the XML documents into generated binding objects whose
attributes are named after the XML elements (ID, NAME, PERMISSIONS, ...).
This module reads those objects into plain records.

Every decode populates the full computed field set (owner and group ids and
names, permissions, registration time) even when the caller needs only part
of it, because callers persist the whole record as their new baseline.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .permissions import PermissionSet


class DecodeError(Exception):
    """Raised when a remote payload is not the expected document."""

    pass


@dataclass(frozen=True)
class RemoteObjectRef:
    """Cross-call identity of a remote object.

    id is assigned by the remote service and never changes; name is mutable.
    """

    id: int | None
    name: str


@dataclass(frozen=True)
class OwnershipInfo:
    """Owner and group, set by the remote service at creation time."""

    uid: int = -1
    gid: int = -1
    uname: str = ""
    gname: str = ""


@dataclass
class ObservedObjectState:
    """Decoded remote representation of one object."""

    ref: RemoteObjectRef
    ownership: OwnershipInfo = field(default_factory=OwnershipInfo)
    permissions: PermissionSet = field(default_factory=PermissionSet)
    attributes: dict[str, Any] = field(default_factory=dict)
    state: int | None = None
    reg_time: int | None = None

    @property
    def id(self) -> int:
        """Remote id. Observed objects always carry one."""
        if self.ref.id is None:
            raise DecodeError(f"Observed object '{self.ref.name}' has no id")
        return self.ref.id

    @property
    def name(self) -> str:
        return self.ref.name

    def to_dict(self) -> dict[str, Any]:
        """Flat, serializable view used for state files and display."""
        data: dict[str, Any] = {
            "id": self.ref.id,
            "name": self.ref.name,
            "uid": self.ownership.uid,
            "gid": self.ownership.gid,
            "uname": self.ownership.uname,
            "gname": self.ownership.gname,
            "permissions": self.permissions.text,
        }
        if self.reg_time is not None:
            data["reg_time"] = self.reg_time
        if self.state is not None:
            data["state"] = self.state
        data.update(self.attributes)
        return data


def expect_document(payload: Any, expected_tag: str) -> Any:
    """Check that a pyone result is the expected document.

    pyone names its binding classes after the XML element, possibly behind
    a subclass, so the tag is looked up along the class hierarchy.

    Raises:
        DecodeError: If the payload is not a document of that element.
    """
    names = {cls.__name__ for cls in type(payload).__mro__}
    if expected_tag not in names:
        raise DecodeError(f"Expected <{expected_tag}> document, got {type(payload).__name__}")
    return payload


def as_list(value: Any) -> list[Any]:
    """Repeated elements come back as a list, a single object or None."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def text_of(obj: Any, name: str, default: str = "") -> str:
    value = getattr(obj, name, None)
    return default if value is None else str(value).strip()


def int_of(obj: Any, name: str, default: int | None = None) -> int | None:
    value = getattr(obj, name, None)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"<{name}> must be an integer, got {value!r}") from e


def _int_or(obj: Any, name: str, default: int) -> int:
    value = int_of(obj, name)
    return default if value is None else value


def template_attributes(template: Any) -> dict[str, Any]:
    """Copy a TEMPLATE section.

    pyone hands TEMPLATE over as a mapping: single attributes map to their
    text, vector attributes (e.g. DISK) to nested mappings, repeated
    attributes to lists.
    """
    if not isinstance(template, Mapping):
        return {}
    return {key: _plain(value) for key, value in template.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return "" if value is None else str(value)


def decode_common(obj: Any) -> ObservedObjectState:
    """Decode the fields every OpenNebula pool object carries."""
    object_id = int_of(obj, "ID")
    if object_id is None:
        raise DecodeError(f"<{type(obj).__name__}> object has no ID")

    return ObservedObjectState(
        ref=RemoteObjectRef(id=object_id, name=text_of(obj, "NAME")),
        ownership=OwnershipInfo(
            uid=_int_or(obj, "UID", -1),
            gid=_int_or(obj, "GID", -1),
            uname=text_of(obj, "UNAME"),
            gname=text_of(obj, "GNAME"),
        ),
        permissions=PermissionSet.from_binding(getattr(obj, "PERMISSIONS", None)),
        reg_time=int_of(obj, "REGTIME"),
    )

"""Unix-style permission codec for OpenNebula objects.

OpenNebula stores nine independent flags per object: use/manage/admin for
each of owner/group/other. The textual form is three octal-like digits in
owner-group-other order, each digit being use*4 + manage*2 + admin:

    "642" -> owner {use, manage}, group {use}, other {manage}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .client import RpcClient

logger = logging.getLogger(__name__)

PERMISSION_TEXT_LENGTH = 3

# Element names of the PERMISSIONS block, in the positional order chmod expects them
PERMISSION_FIELDS: tuple[str, ...] = (
    "OWNER_U",
    "OWNER_M",
    "OWNER_A",
    "GROUP_U",
    "GROUP_M",
    "GROUP_A",
    "OTHER_U",
    "OTHER_M",
    "OTHER_A",
)


class ValidationError(Exception):
    """Raised when caller-supplied input is malformed.

    Detected before any remote call is made.
    """

    pass


@dataclass(frozen=True)
class PermissionSet:
    """Fully specified permission flags. A missing flag is False."""

    owner_use: bool = False
    owner_manage: bool = False
    owner_admin: bool = False
    group_use: bool = False
    group_manage: bool = False
    group_admin: bool = False
    other_use: bool = False
    other_manage: bool = False
    other_admin: bool = False

    @classmethod
    def from_text(cls, text: str) -> PermissionSet:
        """Alias for decode()."""
        return decode(text)

    @classmethod
    def from_binding(cls, permissions: Any) -> PermissionSet:
        """Decode a pyone PERMISSIONS object (attributes OWNER_U ... OTHER_A)."""
        if permissions is None:
            return cls()

        flags = []
        for name in PERMISSION_FIELDS:
            value = getattr(permissions, name, 0)
            flags.append(str(value).strip() not in ("", "0", "None"))
        return cls(*flags)

    @property
    def text(self) -> str:
        """Canonical three-digit form."""
        return encode(self)

    def as_rpc_args(self) -> tuple[int, ...]:
        """Nine discrete 0/1 values in chmod argument order."""
        return (
            int(self.owner_use),
            int(self.owner_manage),
            int(self.owner_admin),
            int(self.group_use),
            int(self.group_manage),
            int(self.group_admin),
            int(self.other_use),
            int(self.other_manage),
            int(self.other_admin),
        )

    def __str__(self) -> str:
        return self.text


def _digit(use: bool, manage: bool, admin: bool) -> str:
    return str(int(use) * 4 + int(manage) * 2 + int(admin))


def encode(permissions: PermissionSet) -> str:
    """Render a permission set as three digits, owner-group-other."""
    p = permissions
    return (
        _digit(p.owner_use, p.owner_manage, p.owner_admin)
        + _digit(p.group_use, p.group_manage, p.group_admin)
        + _digit(p.other_use, p.other_manage, p.other_admin)
    )


def decode(text: str) -> PermissionSet:
    """Parse three digits in [0-7] into a permission set.

    Raises:
        ValidationError: If the text is not exactly three ASCII digits 0-7.
    """
    if not isinstance(text, str) or len(text) != PERMISSION_TEXT_LENGTH:
        raise ValidationError(
            f"Permissions must specify 3 permission sets (owner-group-other): {text!r}"
        )
    if any(c not in "01234567" for c in text):
        raise ValidationError(
            f"Each permission digit must be a number from 0 to 7: {text!r}"
        )

    flags: list[bool] = []
    for c in text:
        d = int(c)
        flags.extend((d & 4 != 0, d & 2 != 0, d & 1 != 0))
    return PermissionSet(*flags)


async def apply_permissions(
    client: RpcClient,
    method: str,
    object_id: int,
    permissions: PermissionSet,
) -> Any:
    """Issue exactly one chmod call for an object.

    The trailing flag is always False: permissions of associated objects
    (e.g. the images of a template) are never changed.
    """
    logger.info(
        "Changing permissions",
        extra={"method": method, "object_id": object_id, "permissions": permissions.text},
    )
    return await client.call_async(method, object_id, *permissions.as_rpc_args(), False)

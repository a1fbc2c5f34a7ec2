"""Per-kind capability sets for the generic reconciler.

A ResourceKind binds the OpenNebula API call names, argument shapes and
attribute decoding of one object kind. The reconciler itself is kind-agnostic;
everything that differs between templates, images and virtual networks lives
here.
"""

from __future__ import annotations

import ipaddress
import logging
from enum import IntEnum
from typing import TYPE_CHECKING, Any, ClassVar, cast

from .models import BaseResourceSpec, ImageSpec, TemplateSpec, VnetSpec
from .records import (
    DecodeError,
    ObservedObjectState,
    as_list,
    decode_common,
    expect_document,
    int_of,
    template_attributes,
    text_of,
)

if TYPE_CHECKING:
    from .client import RpcClient

logger = logging.getLogger(__name__)

# Pool filter flag: objects owned by the session user
POOL_FILTER_MINE = -3
# Pool range bounds meaning "no limit"
POOL_RANGE_ALL = -1

# one.*.update modes
UPDATE_MODE_REPLACE = 0


class ImageState(IntEnum):
    """OpenNebula image lifecycle states."""

    INIT = 0
    READY = 1
    USED = 2
    DISABLED = 3
    LOCKED = 4
    ERROR = 5
    CLONE = 6
    DELETE = 7
    USED_PERS = 8
    LOCKED_USED = 9
    LOCKED_USED_PERS = 10


def quote(value: str) -> str:
    """Quote a value for an OpenNebula template attribute."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ResourceKind:
    """Capability set of one object kind.

    Subclasses set the class attributes and override the hooks whose
    behavior differs from the defaults.
    """

    name: ClassVar[str]
    spec_class: ClassVar[type[BaseResourceSpec]]

    element_tag: ClassVar[str]
    pool_tag: ClassVar[str]

    allocate_method: ClassVar[str]
    # Kinds that can be cloned set this and define clone_args()
    clone_method: ClassVar[str | None] = None
    info_method: ClassVar[str]
    pool_info_method: ClassVar[str]
    update_method: ClassVar[str]
    rename_method: ClassVar[str]
    delete_method: ClassVar[str]
    chmod_method: ClassVar[str]

    # Spec fields carried by the update call; a change in any of them issues
    # exactly one update call with the full body.
    body_fields: ClassVar[tuple[str, ...]] = ("description",)

    # Spec fields handled by update_extra()
    extra_fields: ClassVar[tuple[str, ...]] = ()

    # True when a freshly created object must be awaited before use
    has_ready_state: ClassVar[bool] = False

    # ---------------------------------------------------------------- calls

    def info_args(self, object_id: int) -> tuple[Any, ...]:
        return (object_id, False)

    def pool_info_args(self) -> tuple[Any, ...]:
        return (POOL_FILTER_MINE, POOL_RANGE_ALL, POOL_RANGE_ALL)

    def allocate_body(self, spec: BaseResourceSpec) -> str:
        """Allocation template: NAME header followed by the free-form body."""
        return f"NAME = {quote(spec.name)}\n" + self.update_body(spec)

    def allocate_args(self, spec: BaseResourceSpec) -> tuple[Any, ...]:
        return (self.allocate_body(spec),)

    def update_body(self, spec: BaseResourceSpec) -> str:
        return spec.description

    def update_args(self, object_id: int, spec: BaseResourceSpec) -> tuple[Any, ...]:
        return (object_id, self.update_body(spec), UPDATE_MODE_REPLACE)

    def delete_args(self, object_id: int) -> tuple[Any, ...]:
        return (object_id, False)

    # ------------------------------------------------------------- decoding

    def decode(self, payload: Any) -> ObservedObjectState:
        """Decode an info document parsed by pyone."""
        return self.decode_object(expect_document(payload, self.element_tag))

    def decode_pool(self, payload: Any) -> list[ObservedObjectState]:
        """Decode a pool listing, preserving the remote order."""
        pool = expect_document(payload, self.pool_tag)
        return [self.decode_object(obj) for obj in as_list(getattr(pool, self.element_tag, None))]

    def decode_object(self, obj: Any) -> ObservedObjectState:
        observed = decode_common(obj)
        observed.attributes = self.decode_attributes(obj)
        observed.state = self.decode_state(obj)
        return observed

    def decode_attributes(self, obj: Any) -> dict[str, Any]:
        return {"template": template_attributes(getattr(obj, "TEMPLATE", None))}

    def decode_state(self, obj: Any) -> int | None:
        return None

    # ---------------------------------------------------------------- hooks

    def observed_fields(self, observed: ObservedObjectState) -> dict[str, Any]:
        """Spec fields that can be read back from the remote object.

        Body fields are free-form and rewritten by the service, so they are
        not read back.
        """
        return {"name": observed.name, "permissions": observed.permissions.text}

    def is_ready(self, observed: ObservedObjectState) -> bool:
        """Readiness predicate for kinds with an asynchronous provisioning phase."""
        return True

    async def after_create(
        self, client: RpcClient, object_id: int, spec: BaseResourceSpec
    ) -> None:
        """Nested calls issued once, right after allocation."""
        return None

    async def update_extra(
        self,
        client: RpcClient,
        object_id: int,
        old: BaseResourceSpec,
        new: BaseResourceSpec,
    ) -> list[str]:
        """Apply changes to extra_fields. Returns the fields actually applied."""
        return []


class TemplateKind(ResourceKind):
    """VM templates."""

    name = "template"
    spec_class = TemplateSpec
    element_tag = "VMTEMPLATE"
    pool_tag = "VMTEMPLATE_POOL"

    allocate_method = "one.template.allocate"
    clone_method = "one.template.clone"
    info_method = "one.template.info"
    pool_info_method = "one.templatepool.info"
    update_method = "one.template.update"
    rename_method = "one.template.rename"
    delete_method = "one.template.delete"
    chmod_method = "one.template.chmod"

    def clone_args(self, spec: BaseResourceSpec, source_id: int) -> tuple[Any, ...]:
        # Trailing False: do not clone the template's images
        return (source_id, spec.name, False)


class ImageKind(ResourceKind):
    """Disk images. New images are usable only once they reach READY."""

    name = "image"
    spec_class = ImageSpec
    element_tag = "IMAGE"
    pool_tag = "IMAGE_POOL"

    allocate_method = "one.image.allocate"
    clone_method = "one.image.clone"
    info_method = "one.image.info"
    pool_info_method = "one.imagepool.info"
    update_method = "one.image.update"
    rename_method = "one.image.rename"
    delete_method = "one.image.delete"
    chmod_method = "one.image.chmod"

    has_ready_state = True

    def allocate_args(self, spec: BaseResourceSpec) -> tuple[Any, ...]:
        image = cast(ImageSpec, spec)
        return (self.allocate_body(image), image.datastore_id)

    def clone_args(self, spec: BaseResourceSpec, source_id: int) -> tuple[Any, ...]:
        image = cast(ImageSpec, spec)
        return (source_id, image.name, image.datastore_id)

    def decode_attributes(self, obj: Any) -> dict[str, Any]:
        return {
            "datastore_id": int_of(obj, "DATASTORE_ID"),
            "datastore": text_of(obj, "DATASTORE"),
            "size": int_of(obj, "SIZE"),
            "persistent": text_of(obj, "PERSISTENT") == "1",
            "source": text_of(obj, "SOURCE"),
            "path": text_of(obj, "PATH"),
            "fstype": text_of(obj, "FS"),
            "running_vms": int_of(obj, "RUNNING_VMS", 0),
            "template": template_attributes(getattr(obj, "TEMPLATE", None)),
        }

    def decode_state(self, obj: Any) -> int | None:
        state = int_of(obj, "STATE")
        if state is None:
            raise DecodeError("IMAGE document has no STATE")
        return state

    def is_ready(self, observed: ObservedObjectState) -> bool:
        return observed.state == ImageState.READY


class VnetKind(ResourceKind):
    """Virtual networks with an IPv4 address range and optional reservations."""

    name = "vnet"
    spec_class = VnetSpec
    element_tag = "VNET"
    pool_tag = "VNET_POOL"

    allocate_method = "one.vn.allocate"
    info_method = "one.vn.info"
    pool_info_method = "one.vnpool.info"
    update_method = "one.vn.update"
    rename_method = "one.vn.rename"
    delete_method = "one.vn.delete"
    chmod_method = "one.vn.chmod"

    add_ar_method: ClassVar[str] = "one.vn.add_ar"
    update_ar_method: ClassVar[str] = "one.vn.update_ar"
    hold_method: ClassVar[str] = "one.vn.hold"
    reserve_method: ClassVar[str] = "one.vn.reserve"

    body_fields = ("description", "bridge")
    extra_fields = ("ip_size", "ip_start", "reservation_size", "reservation_mode")

    # Cluster -1: the default cluster
    default_cluster_id: ClassVar[int] = -1

    def allocate_args(self, spec: BaseResourceSpec) -> tuple[Any, ...]:
        return (self.allocate_body(spec), self.default_cluster_id)

    def update_body(self, spec: BaseResourceSpec) -> str:
        vnet = cast(VnetSpec, spec)
        bridge = f"BRIDGE = {quote(vnet.bridge)}"
        body = vnet.description.rstrip("\n")
        return f"{body}\n{bridge}" if body else bridge

    def delete_args(self, object_id: int) -> tuple[Any, ...]:
        # one.vn.delete(session, id) has no recursive/force flag, unlike
        # one.template.delete and one.image.delete
        return (object_id,)

    def decode_attributes(self, obj: Any) -> dict[str, Any]:
        ranges = []
        ar_pool = getattr(obj, "AR_POOL", None)
        for ar in as_list(getattr(ar_pool, "AR", None)):
            ranges.append(
                {
                    "ar_id": int_of(ar, "AR_ID"),
                    "type": text_of(ar, "TYPE"),
                    "ip": text_of(ar, "IP"),
                    "size": int_of(ar, "SIZE"),
                    "used_leases": int_of(ar, "USED_LEASES", 0),
                }
            )
        return {
            "bridge": text_of(obj, "BRIDGE"),
            "vn_mad": text_of(obj, "VN_MAD"),
            "used_leases": int_of(obj, "USED_LEASES", 0),
            "address_ranges": ranges,
            "template": template_attributes(getattr(obj, "TEMPLATE", None)),
        }

    def observed_fields(self, observed: ObservedObjectState) -> dict[str, Any]:
        fields = super().observed_fields(observed)
        bridge = observed.attributes.get("bridge")
        if bridge:
            fields["bridge"] = bridge
        for ar in observed.attributes.get("address_ranges", []):
            # AR 0 is the range added at creation
            if ar["ar_id"] == 0 and ar["ip"] and ar["size"] is not None:
                fields["ip_start"] = ar["ip"]
                fields["ip_size"] = ar["size"]
        return fields

    @staticmethod
    def address_range(ip: str, size: int, ar_id: int | None = None) -> str:
        lines = []
        if ar_id is not None:
            lines.append(f"  AR_ID = {ar_id},")
        lines.append("  TYPE = IP4,")
        lines.append(f"  IP = {ip},")
        lines.append(f"  SIZE = {size} ]")
        return "AR = [\n" + "\n".join(lines)

    async def after_create(
        self, client: RpcClient, object_id: int, desired: BaseResourceSpec
    ) -> None:
        spec = cast(VnetSpec, desired)

        await client.call_async(
            self.add_ar_method, object_id, self.address_range(spec.ip_start, spec.ip_size)
        )
        logger.info(
            "Added address range",
            extra={"object_id": object_id, "ip_start": spec.ip_start, "ip_size": spec.ip_size},
        )

        if spec.reservation_size <= 0:
            return

        if spec.reservation_mode == "reserve":
            reservation_name = spec.reservation_name or f"{spec.name}-reservation"
            template = (
                f"NAME = {quote(reservation_name)}\n"
                f"SIZE = {spec.reservation_size}\n"
                f"AR_ID = 0\n"
                f"IP = {spec.ip_start}"
            )
            reservation_id = await client.call_async(self.reserve_method, object_id, template)
            logger.info(
                "Reserved addresses",
                extra={
                    "object_id": object_id,
                    "reservation_id": reservation_id,
                    "size": spec.reservation_size,
                },
            )
            return

        first = ipaddress.IPv4Address(spec.ip_start)
        for offset in range(spec.reservation_size):
            await client.call_async(
                self.hold_method, object_id, f"LEASES = [ IP = {first + offset} ]"
            )
        logger.info(
            "Held addresses",
            extra={"object_id": object_id, "first_ip": str(first), "count": spec.reservation_size},
        )

    async def update_extra(
        self,
        client: RpcClient,
        object_id: int,
        old: BaseResourceSpec,
        new: BaseResourceSpec,
    ) -> list[str]:
        old, new = cast(VnetSpec, old), cast(VnetSpec, new)
        applied: list[str] = []

        if old.ip_start != new.ip_start:
            logger.warning(
                "Changing the start address of an address range is not supported",
                extra={"object_id": object_id, "old": old.ip_start, "new": new.ip_start},
            )

        if old.ip_size != new.ip_size:
            # Resize in place, keeping the current start address
            await client.call_async(
                self.update_ar_method,
                object_id,
                self.address_range(old.ip_start, new.ip_size, ar_id=0),
            )
            logger.info(
                "Resized address range",
                extra={"object_id": object_id, "old": old.ip_size, "new": new.ip_size},
            )
            applied.append("ip_size")

        if (old.reservation_size, old.reservation_mode) != (
            new.reservation_size,
            new.reservation_mode,
        ):
            logger.warning(
                "Reservations are created once and are not updated",
                extra={"object_id": object_id},
            )

        return applied


KIND_REGISTRY: dict[str, ResourceKind] = {
    kind.name: kind for kind in (TemplateKind(), ImageKind(), VnetKind())
}


def get_kind(name: str) -> ResourceKind:
    """Look up a resource kind by name.

    Raises:
        ValueError: If the kind is not recognized.
    """
    kind = KIND_REGISTRY.get(name)
    if kind is None:
        raise ValueError(f"Unknown kind '{name}'. Valid kinds: {list(KIND_REGISTRY)}")
    return kind


def kind_for_spec(spec: BaseResourceSpec) -> ResourceKind:
    """Find the kind that reconciles a given spec instance."""
    for kind in KIND_REGISTRY.values():
        if isinstance(spec, kind.spec_class):
            return kind
    raise ValueError(f"No resource kind handles {type(spec).__name__}")

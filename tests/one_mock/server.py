"""In-memory OpenNebula XML-RPC endpoint.

Mimics the wire contract of the real service closely enough for the
operator's client: every method takes the session string first and answers
[success, result_or_error, error_code]. Objects, ownership, permissions,
image states and virtual network address ranges are kept in memory.
"""

from __future__ import annotations

import re
import xmlrpc.client
from dataclasses import dataclass, field
from typing import Any
from xml.etree.ElementTree import Element, SubElement, tostring

import pyone

IMAGE_INIT = 0
IMAGE_READY = 1
IMAGE_LOCKED = 4
IMAGE_ERROR = 5

# Error codes used by OpenNebula
AUTHENTICATION = 0x0100
NO_EXISTS = 0x0400
ACTION = 0x0800

PERMISSION_TAGS = (
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

MUTATING_ACTIONS = frozenset(
    {
        "allocate",
        "clone",
        "update",
        "rename",
        "chmod",
        "delete",
        "add_ar",
        "update_ar",
        "hold",
        "reserve",
    }
)

# API prefix -> (kind, element tag, pool tag)
_KINDS = {
    "one.template": ("template", "VMTEMPLATE", "VMTEMPLATE_POOL"),
    "one.image": ("image", "IMAGE", "IMAGE_POOL"),
    "one.vn": ("vnet", "VNET", "VNET_POOL"),
}
_POOLS = {
    "one.templatepool.info": "one.template",
    "one.imagepool.info": "one.image",
    "one.vnpool.info": "one.vn",
}

_SIMPLE_ATTRIBUTE = re.compile(r'^\s*([A-Z_][A-Z0-9_]*)\s*=\s*"?(.*?)"?\s*$')


@dataclass
class MockCall:
    """One recorded API call, without the session argument."""

    method: str
    args: tuple[Any, ...]

    @property
    def action(self) -> str:
        return self.method.rsplit(".", 1)[-1]

    @property
    def mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS


@dataclass
class MockObject:
    """One remote object."""

    kind: str
    id: int
    name: str
    uid: int = 0
    gid: int = 0
    uname: str = "oneadmin"
    gname: str = "oneadmin"
    permissions: tuple[int, ...] = (1, 1, 0, 0, 0, 0, 0, 0, 0)
    body: str = ""
    reg_time: int = 1700000000
    # image
    state: int | None = None
    state_script: list[int] = field(default_factory=list)
    datastore_id: int = 0
    # vnet
    bridge: str = ""
    address_ranges: list[dict[str, Any]] = field(default_factory=list)
    leases: list[str] = field(default_factory=list)

    @property
    def permission_text(self) -> str:
        p = self.permissions
        return "".join(str(p[i] * 4 + p[i + 1] * 2 + p[i + 2]) for i in (0, 3, 6))

    def template(self) -> dict[str, str]:
        attributes: dict[str, str] = {}
        for line in self.body.splitlines():
            match = _SIMPLE_ATTRIBUTE.match(line)
            if match:
                attributes[match.group(1)] = match.group(2)
        return attributes


@dataclass
class _Failure:
    message: str
    code: int
    transport: bool
    remaining: int


class MockOpenNebula:
    """Stand-in for an OpenNebula frontend, plugged in as pyone's transport.

    Usage:
        server = MockOpenNebula()
        one = server.connect("http://one:2633/RPC2", "oneadmin:secret")
        client = RpcClient("http://one:2633/RPC2", "oneadmin", "secret", server=one)
        server.add_object("image", "base", permissions="640")
        server.fail("one.image.info", "boom")
    """

    def __init__(self, *, username: str = "oneadmin", password: str = "secret", uid: int = 0) -> None:
        self.session = f"{username}:{password}"
        self.username = username
        self.uid = uid
        self.objects: dict[tuple[str, int], MockObject] = {}
        self.calls: list[MockCall] = []
        # States a new image walks through, one per info call
        self.image_state_script: list[int] = [IMAGE_READY]
        self._next_ids: dict[str, int] = {"template": 0, "image": 0, "vnet": 0}
        self._failures: dict[str, list[_Failure]] = {}

    # ------------------------------------------------------------- test API

    def add_object(
        self,
        kind: str,
        name: str,
        *,
        permissions: str = "600",
        uid: int | None = None,
        **attributes: Any,
    ) -> MockObject:
        """Seed an object as if it had been created out of band."""
        object_id = self._next_id(kind)
        obj = MockObject(
            kind=kind,
            id=object_id,
            name=name,
            uid=self.uid if uid is None else uid,
            permissions=_permission_tuple(permissions),
            **attributes,
        )
        if kind == "image" and obj.state is None:
            obj.state = IMAGE_READY
        self.objects[(kind, object_id)] = obj
        return obj

    def get(self, kind: str, object_id: int) -> MockObject | None:
        return self.objects.get((kind, object_id))

    def find(self, kind: str, name: str) -> list[MockObject]:
        return [o for (k, _), o in sorted(self.objects.items()) if k == kind and o.name == name]

    def fail(
        self,
        method: str,
        message: str = "Error",
        *,
        code: int = ACTION,
        times: int = 1,
        transport: bool = False,
    ) -> None:
        """Make the next `times` calls of method fail.

        transport=True raises a connection error instead of answering with a
        failure response.
        """
        self._failures.setdefault(method, []).append(_Failure(message, code, transport, times))

    def calls_to(self, method: str) -> list[MockCall]:
        return [c for c in self.calls if c.method == method]

    def mutating_calls(self) -> list[MockCall]:
        return [c for c in self.calls if c.mutating]

    def reset_calls(self) -> None:
        self.calls.clear()

    def connect(self, endpoint: str, session: str) -> pyone.OneServer:
        """Build a pyone server whose requests are answered in memory."""
        one = pyone.OneServer(endpoint, session=session)
        # ServerProxy keeps its transport in a name-mangled attribute
        one._ServerProxy__transport = self
        return one

    # ------------------------------------------------------------ transport

    def request(
        self, host: str, handler: str, request_body: bytes, verbose: bool = False
    ) -> tuple[Any, ...]:
        """xmlrpc transport entry point: decode the call, answer it, re-encode."""
        params, method = xmlrpc.client.loads(request_body)
        if not method.startswith("one."):
            method = f"one.{method}"
        session, args = params[0], tuple(params[1:])

        response = self._dispatch(method, session, args)

        body = xmlrpc.client.dumps((response,), methodresponse=True, allow_none=True)
        return xmlrpc.client.loads(body)[0]

    def close(self) -> None:
        pass

    # ------------------------------------------------------------- dispatch

    def _dispatch(self, method: str, session: str, args: tuple[Any, ...]) -> list[Any]:
        self.calls.append(MockCall(method, args))

        injected = self._take_failure(method)
        if injected is not None:
            if injected.transport:
                raise ConnectionRefusedError(111, injected.message)
            return [False, f"[{method}] {injected.message}", injected.code]

        if session != self.session:
            return [False, f"[{method}] User couldn't be authenticated, aborting call.", AUTHENTICATION]

        if method in _POOLS:
            return self._pool_info(_POOLS[method], *args)

        prefix, _, action = method.rpartition(".")
        if prefix not in _KINDS:
            raise xmlrpc.client.Fault(-1, f"Method not supported: {method}")

        handler = getattr(self, f"_do_{action}", None)
        if handler is None:
            raise xmlrpc.client.Fault(-1, f"Method not supported: {method}")
        return handler(prefix, method, *args)

    def _take_failure(self, method: str) -> _Failure | None:
        queue = self._failures.get(method)
        if not queue:
            return None
        failure = queue[0]
        failure.remaining -= 1
        if failure.remaining <= 0:
            queue.pop(0)
        return failure

    def _next_id(self, kind: str) -> int:
        object_id = self._next_ids[kind]
        self._next_ids[kind] = object_id + 1
        return object_id

    def _lookup(self, prefix: str, method: str, object_id: int) -> MockObject | list[Any]:
        kind = _KINDS[prefix][0]
        obj = self.objects.get((kind, object_id))
        if obj is None:
            return [False, f"[{method}] Error getting {kind} [{object_id}].", NO_EXISTS]
        return obj

    # -------------------------------------------------------------- methods

    def _do_allocate(self, prefix: str, method: str, body: str, *extra: Any) -> list[Any]:
        kind = _KINDS[prefix][0]
        attributes = _parse_attributes(body)
        name = attributes.pop("NAME", "")
        if not name:
            return [False, f"[{method}] No NAME in template.", ACTION]

        obj = MockObject(kind=kind, id=self._next_id(kind), name=name, uid=self.uid, body=_strip_name(body))
        if kind == "image":
            obj.datastore_id = int(extra[0])
            obj.state = IMAGE_LOCKED
            obj.state_script = list(self.image_state_script)
        if kind == "vnet":
            obj.bridge = attributes.get("BRIDGE", "")
        self.objects[(kind, obj.id)] = obj
        return [True, obj.id, 0]

    def _do_clone(self, prefix: str, method: str, source_id: int, name: str, *extra: Any) -> list[Any]:
        source = self._lookup(prefix, method, source_id)
        if isinstance(source, list):
            return source
        kind = _KINDS[prefix][0]
        obj = MockObject(kind=kind, id=self._next_id(kind), name=name, uid=self.uid, body=source.body)
        if kind == "image":
            obj.datastore_id = int(extra[0]) if extra else source.datastore_id
            obj.state = IMAGE_LOCKED
            obj.state_script = list(self.image_state_script)
        self.objects[(kind, obj.id)] = obj
        return [True, obj.id, 0]

    def _do_info(self, prefix: str, method: str, object_id: int, *extra: Any) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        if obj.state_script:
            obj.state = obj.state_script.pop(0)
        return [True, self._render(obj), 0]

    def _do_update(self, prefix: str, method: str, object_id: int, body: str, mode: int) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        obj.body = body
        if obj.kind == "vnet":
            obj.bridge = _parse_attributes(body).get("BRIDGE", obj.bridge)
        return [True, object_id, 0]

    def _do_rename(self, prefix: str, method: str, object_id: int, name: str) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        obj.name = name
        return [True, object_id, 0]

    def _do_chmod(self, prefix: str, method: str, object_id: int, *args: Any) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        flags, _recursive = args[:9], args[9:]
        obj.permissions = tuple(int(f) for f in flags)
        return [True, object_id, 0]

    def _do_delete(self, prefix: str, method: str, object_id: int, *extra: Any) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        del self.objects[(obj.kind, object_id)]
        return [True, object_id, 0]

    def _do_add_ar(self, prefix: str, method: str, object_id: int, template: str) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        ar = _parse_vector(template)
        obj.address_ranges.append(
            {"ar_id": len(obj.address_ranges), "ip": ar["IP"], "size": int(ar["SIZE"])}
        )
        return [True, object_id, 0]

    def _do_update_ar(self, prefix: str, method: str, object_id: int, template: str) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        ar = _parse_vector(template)
        for existing in obj.address_ranges:
            if existing["ar_id"] == int(ar["AR_ID"]):
                existing["size"] = int(ar["SIZE"])
                return [True, object_id, 0]
        return [False, f"[{method}] Address Range does not exist.", ACTION]

    def _do_hold(self, prefix: str, method: str, object_id: int, template: str) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        ip = _parse_vector(template)["IP"]
        if ip in obj.leases:
            return [False, f"[{method}] Address {ip} already on hold.", ACTION]
        obj.leases.append(ip)
        return [True, object_id, 0]

    def _do_reserve(self, prefix: str, method: str, object_id: int, template: str) -> list[Any]:
        obj = self._lookup(prefix, method, object_id)
        if isinstance(obj, list):
            return obj
        attributes = _parse_attributes(template)
        reservation = MockObject(
            kind="vnet",
            id=self._next_id("vnet"),
            name=attributes["NAME"],
            uid=self.uid,
            bridge=obj.bridge,
        )
        reservation.address_ranges.append(
            {"ar_id": 0, "ip": attributes["IP"], "size": int(attributes["SIZE"])}
        )
        self.objects[("vnet", reservation.id)] = reservation
        return [True, reservation.id, 0]

    def _pool_info(self, prefix: str, filter_flag: int, start: int, end: int) -> list[Any]:
        kind, _, pool_tag = _KINDS[prefix]
        pool = Element(pool_tag)
        for (k, _), obj in sorted(self.objects.items()):
            if k != kind:
                continue
            if filter_flag == -3 and obj.uid != self.uid:
                continue
            pool.append(self._element(obj))
        return [True, tostring(pool, encoding="unicode"), 0]

    # ------------------------------------------------------------ rendering

    def _render(self, obj: MockObject) -> str:
        return tostring(self._element(obj), encoding="unicode")

    def _element(self, obj: MockObject) -> Element:
        tag = {"template": "VMTEMPLATE", "image": "IMAGE", "vnet": "VNET"}[obj.kind]
        root = Element(tag)
        for child, value in (
            ("ID", obj.id),
            ("UID", obj.uid),
            ("GID", obj.gid),
            ("UNAME", obj.uname),
            ("GNAME", obj.gname),
            ("NAME", obj.name),
        ):
            SubElement(root, child).text = str(value)

        perms = SubElement(root, "PERMISSIONS")
        for child, value in zip(PERMISSION_TAGS, obj.permissions):
            SubElement(perms, child).text = str(value)
        SubElement(root, "REGTIME").text = str(obj.reg_time)

        if obj.kind == "image":
            SubElement(root, "STATE").text = str(obj.state)
            SubElement(root, "DATASTORE_ID").text = str(obj.datastore_id)
            SubElement(root, "DATASTORE").text = "default"
            SubElement(root, "SIZE").text = "1024"
            SubElement(root, "PERSISTENT").text = "0"
            SubElement(root, "RUNNING_VMS").text = "0"

        if obj.kind == "vnet":
            SubElement(root, "BRIDGE").text = obj.bridge
            SubElement(root, "VN_MAD").text = "bridge"
            SubElement(root, "USED_LEASES").text = str(len(obj.leases))
            ar_pool = SubElement(root, "AR_POOL")
            for ar in obj.address_ranges:
                ar_el = SubElement(ar_pool, "AR")
                SubElement(ar_el, "AR_ID").text = str(ar["ar_id"])
                SubElement(ar_el, "TYPE").text = "IP4"
                SubElement(ar_el, "IP").text = ar["ip"]
                SubElement(ar_el, "SIZE").text = str(ar["size"])

        template = SubElement(root, "TEMPLATE")
        for key, value in obj.template().items():
            SubElement(template, key).text = value
        return root


def _permission_tuple(text: str) -> tuple[int, ...]:
    flags: list[int] = []
    for c in text:
        d = int(c)
        flags.extend((d >> 2 & 1, d >> 1 & 1, d & 1))
    return tuple(flags)


def _parse_attributes(body: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for line in body.splitlines():
        match = _SIMPLE_ATTRIBUTE.match(line)
        if match:
            attributes[match.group(1)] = match.group(2)
    return attributes


def _parse_vector(template: str) -> dict[str, str]:
    """Parse the inside of a single vector attribute, e.g. AR = [ IP = x, SIZE = 2 ]."""
    inner = template[template.find("[") + 1 : template.rfind("]")]
    values: dict[str, str] = {}
    for part in inner.split(","):
        if "=" in part:
            key, _, value = part.partition("=")
            values[key.strip()] = value.strip().strip('"')
    return values


def _strip_name(body: str) -> str:
    return "\n".join(line for line in body.splitlines() if not line.startswith("NAME ="))

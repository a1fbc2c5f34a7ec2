"""Generic resource reconciler.

One Reconciler instance manages objects of one kind. The kind supplies the
call names and argument shapes; the reconciler supplies the lifecycle:

    create:  allocate (or clone) -> nested setup -> wait for ready -> chmod -> re-read
    read:    identity resolution (absence is a normal outcome)
    update:  per-field diff, one mutating call per changed field group
    delete:  re-resolve, then delete if present (idempotent)
    apply:   read, then create or update

Every mutating call has provisioning cost and observable side effects on
the remote service, so unchanged fields never produce a call. Multi-step
operations abort on the first failure and leave earlier steps applied; a
later run converges the rest.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from .client import RpcClient, RpcError, parse_object_id
from .config import Config, PollBudget
from .kinds import ResourceKind, get_kind
from .models import BaseResourceSpec
from .permissions import ValidationError, apply_permissions
from .poller import ConvergencePoller, ConvergenceTimeout
from .records import ObservedObjectState
from .resolver import IdentityResolver, Resolution

logger = logging.getLogger(__name__)

# Fields every kind diffs itself; the rest come from the kind
_IDENTITY_FIELDS = ("name", "permissions")


class ReconcileError(Exception):
    """Raised when a multi-step operation fails after the object was created.

    object_id is set when the remote object exists, so the caller can record
    it and converge the remaining steps on the next run.
    """

    def __init__(self, message: str, object_id: int | None = None) -> None:
        super().__init__(message)
        self.object_id = object_id


class ObjectNotFound(Exception):
    """Raised when an operation requires an object that does not exist."""

    pass


class ApplyAction(str, Enum):
    """What apply() did to converge an object."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class UpdateResult:
    """Result of an update: the fields that produced a mutating call."""

    object_id: int
    changed_fields: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


@dataclass
class ApplyResult:
    """Result of converging one object."""

    action: ApplyAction
    state: ObservedObjectState
    changed_fields: list[str] = field(default_factory=list)


class Reconciler:
    """Create, read, update and delete objects of one kind."""

    def __init__(
        self,
        client: RpcClient,
        kind: ResourceKind,
        *,
        budget: PollBudget | None = None,
        allow_ambiguous: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Initialize a reconciler.

        Args:
            client: Shared RPC session client.
            kind: Capability set of the managed kind.
            budget: Readiness wait budget (default: 600s / 10s / 3s).
            allow_ambiguous: Let the first of several same-named objects win.
            cancel: Optional event that aborts readiness waits.
        """
        self._client = client
        self._kind = kind
        self._budget = budget or PollBudget()
        self._cancel = cancel
        self._resolver = IdentityResolver(client, kind, allow_ambiguous=allow_ambiguous)
        self._poller = ConvergencePoller(client, kind)

    @classmethod
    def for_kind(
        cls,
        client: RpcClient,
        kind_name: str,
        config: Config,
        cancel: asyncio.Event | None = None,
    ) -> Reconciler:
        """Build a reconciler for a named kind from operator configuration."""
        return cls(
            client,
            get_kind(kind_name),
            budget=config.poll_budget,
            allow_ambiguous=config.allow_ambiguous_names,
            cancel=cancel,
        )

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    def _check_spec(self, spec: BaseResourceSpec) -> None:
        if not isinstance(spec, self._kind.spec_class):
            raise TypeError(
                f"{self._kind.name} reconciler cannot handle {type(spec).__name__}"
            )

    # ------------------------------------------------------------------ read

    async def read(self, name: str, object_id: int | None = None) -> Resolution:
        """Locate an object. A missing object is reported, never raised."""
        return await self._resolver.resolve(object_id, name)

    async def read_by_id(self, object_id: int) -> ObservedObjectState:
        """Fetch an object by id, without falling back to a name scan.

        Raises:
            RpcError: If the info call fails, including for unknown ids.
        """
        kind = self._kind
        payload = await self._client.call_async(kind.info_method, *kind.info_args(object_id))
        return kind.decode(payload)

    def observed_baseline(
        self, spec: BaseResourceSpec, observed: ObservedObjectState
    ) -> BaseResourceSpec:
        """spec, with every field the kind reads back taken from observed.

        Raises:
            pydantic.ValidationError: If an observed value is not valid in a spec.
        """
        self._check_spec(spec)
        data = spec.model_dump()
        data.update(self._kind.observed_fields(observed))
        return type(spec).model_validate(data)

    # ---------------------------------------------------------------- create

    async def create(self, spec: BaseResourceSpec) -> ObservedObjectState:
        """Create an object and bring it to its desired permissions.

        Raises:
            RpcError: If the allocate or clone call fails (nothing was created).
            ReconcileError: If a later step fails; the object exists.
        """
        self._check_spec(spec)
        kind = self._kind

        source_id = spec.clone_source
        if source_id is not None:
            if kind.clone_method is None:
                raise ValidationError(f"{kind.name} objects cannot be cloned")
            method = kind.clone_method
            args = kind.clone_args(spec, source_id)
        else:
            method = kind.allocate_method
            args = kind.allocate_args(spec)

        payload = await self._client.call_async(method, *args)
        object_id = parse_object_id(method, payload)
        logger.info(
            "Created object",
            extra={
                "kind": kind.name,
                "object_id": object_id,
                "object_name": spec.name,
                "cloned_from": source_id,
            },
        )

        try:
            await kind.after_create(self._client, object_id, spec)

            if kind.has_ready_state:
                await self._poller.wait_for(object_id, kind.is_ready, self._budget, self._cancel)

            await apply_permissions(
                self._client, kind.chmod_method, object_id, spec.permission_set
            )
        except ConvergenceTimeout as e:
            raise ReconcileError(
                f"Error waiting for {kind.name} ({object_id}) to be ready: {e}", object_id
            ) from e
        except RpcError as e:
            raise ReconcileError(
                f"{kind.name} ({object_id}) was created but setup failed: {e}", object_id
            ) from e

        resolution = await self._resolver.resolve(object_id, spec.name)
        if resolution.state is None:
            raise ReconcileError(
                f"{kind.name} ({object_id}) disappeared right after creation", object_id
            )
        return resolution.state

    # ---------------------------------------------------------------- update

    async def update(
        self,
        old: BaseResourceSpec,
        new: BaseResourceSpec,
        object_id: int | None = None,
    ) -> UpdateResult:
        """Apply the differences between two desired states.

        Args:
            old: Previously applied desired state.
            new: Desired state to converge to.
            object_id: Known remote id, if any.

        Raises:
            ObjectNotFound: If the object cannot be resolved.
            RpcError: If a mutating call fails. Earlier calls stay applied.
        """
        self._check_spec(old)
        self._check_spec(new)

        resolution = await self._resolver.resolve(object_id, old.name)
        if resolution.state is None:
            raise ObjectNotFound(f"{self._kind.name} '{old.name}' does not exist")

        return await self._update_resolved(resolution.state.id, old, new)

    async def _update_resolved(
        self,
        object_id: int,
        old: BaseResourceSpec,
        new: BaseResourceSpec,
    ) -> UpdateResult:
        kind = self._kind
        result = UpdateResult(object_id=object_id)

        body_changes = [f for f in kind.body_fields if getattr(old, f) != getattr(new, f)]
        if body_changes:
            await self._client.call_async(kind.update_method, *kind.update_args(object_id, new))
            logger.info(
                "Replaced object template",
                extra={"kind": kind.name, "object_id": object_id, "fields": body_changes},
            )
            result.changed_fields.extend(body_changes)

        if old.name != new.name:
            await self._client.call_async(kind.rename_method, object_id, new.name)
            logger.info(
                "Renamed object",
                extra={"kind": kind.name, "object_id": object_id, "old": old.name, "new": new.name},
            )
            result.changed_fields.append("name")

        result.changed_fields.extend(await kind.update_extra(self._client, object_id, old, new))

        if old.permission_set != new.permission_set:
            await apply_permissions(
                self._client, kind.chmod_method, object_id, new.permission_set
            )
            result.changed_fields.append("permissions")

        handled = set(kind.body_fields) | set(kind.extra_fields) | set(_IDENTITY_FIELDS)
        unhandled = [
            f
            for f in type(new).model_fields
            if f not in handled and getattr(old, f) != getattr(new, f)
        ]
        if unhandled:
            logger.warning(
                "Changes to these fields require recreating the object and were not applied",
                extra={"kind": kind.name, "object_id": object_id, "fields": unhandled},
            )

        return result

    # ---------------------------------------------------------------- delete

    async def delete(self, name: str, object_id: int | None = None) -> bool:
        """Delete an object if it exists.

        Returns:
            True if a delete call was issued, False if the object was absent.
        """
        resolution = await self._resolver.resolve(object_id, name)
        if resolution.state is None:
            logger.info(
                "Object already absent, nothing to delete",
                extra={"kind": self._kind.name, "object_name": name, "object_id": object_id},
            )
            return False

        target_id = resolution.state.id
        await self._client.call_async(
            self._kind.delete_method, *self._kind.delete_args(target_id)
        )
        logger.info(
            "Deleted object",
            extra={"kind": self._kind.name, "object_id": target_id, "object_name": name},
        )
        return True

    # ----------------------------------------------------------------- apply

    async def apply(
        self,
        spec: BaseResourceSpec,
        object_id: int | None = None,
        baseline: BaseResourceSpec | None = None,
    ) -> ApplyResult:
        """Converge one object to spec.

        The diff runs against what the remote service reports: fields the
        kind can read back (name, permissions, ...) are taken from the
        observed object, so out-of-band changes are reverted. Body fields
        come from the baseline (last applied spec), or are assumed unchanged
        without one.
        """
        self._check_spec(spec)
        if baseline is not None:
            self._check_spec(baseline)

        lookup_name = baseline.name if baseline is not None else spec.name
        resolution = await self._resolver.resolve(object_id, lookup_name)

        if resolution.state is None:
            created = await self.create(spec)
            return ApplyResult(action=ApplyAction.CREATED, state=created)

        observed = resolution.state
        old = (baseline or spec).model_copy(update=self._kind.observed_fields(observed))
        if baseline is not None and old != baseline:
            logger.warning(
                "Object drifted from the last applied state",
                extra={"kind": self._kind.name, "object_id": observed.id},
            )
        update = await self._update_resolved(observed.id, old, spec)
        if not update.changed:
            return ApplyResult(action=ApplyAction.UNCHANGED, state=observed)

        refreshed = await self._resolver.resolve(observed.id, spec.name)
        return ApplyResult(
            action=ApplyAction.UPDATED,
            state=refreshed.state or observed,
            changed_fields=update.changed_fields,
        )

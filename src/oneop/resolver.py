"""Identity resolution for remote objects.

The only stable key of an OpenNebula object is its numeric id, which the
caller may not know yet (first run) or which may be stale (object deleted
out of band). Resolution therefore tries the id first and falls back to
(owner, name) as the de facto compound key:

1. Known id: direct info call. Any failure falls through to step 2.
2. Pool listing of the session user's own objects, scanned for the name.
3. No match: a successful negative result, not an error.

Only failures of the pool listing itself are propagated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .client import RpcClient, RpcError
from .kinds import ResourceKind
from .records import ObservedObjectState

logger = logging.getLogger(__name__)


class AmbiguousMatch(Exception):
    """Raised when several objects owned by the session user share a name."""

    def __init__(self, kind: str, name: str, candidate_ids: list[int]) -> None:
        super().__init__(
            f"{len(candidate_ids)} {kind} objects named '{name}' found: {candidate_ids}"
        )
        self.kind = kind
        self.name = name
        self.candidate_ids = candidate_ids


@dataclass(frozen=True)
class Resolution:
    """Outcome of a lookup. found is False when the object does not exist."""

    state: ObservedObjectState | None = None

    @property
    def found(self) -> bool:
        return self.state is not None


NOT_FOUND = Resolution()


class IdentityResolver:
    """Locate the authoritative remote object for (known id, name)."""

    def __init__(
        self,
        client: RpcClient,
        kind: ResourceKind,
        *,
        allow_ambiguous: bool = False,
    ) -> None:
        self._client = client
        self._kind = kind
        self._allow_ambiguous = allow_ambiguous

    async def resolve(self, known_id: int | None, name: str) -> Resolution:
        """Resolve an object by id, falling back to a name scan.

        Raises:
            RpcError: If the pool listing fails.
            DecodeError: If a successful payload cannot be decoded.
            AmbiguousMatch: If several objects match the name and ambiguity
                is not allowed.
        """
        if known_id is not None:
            found = await self._lookup_by_id(known_id)
            if found is not None:
                return Resolution(found)

        return await self._lookup_by_name(name)

    async def _lookup_by_id(self, object_id: int) -> ObservedObjectState | None:
        try:
            payload = await self._client.call_async(
                self._kind.info_method, *self._kind.info_args(object_id)
            )
        except RpcError as e:
            logger.info(
                "Could not find object by id, falling back to name lookup",
                extra={"kind": self._kind.name, "object_id": object_id, "error": str(e)},
            )
            return None
        return self._kind.decode(payload)

    async def _lookup_by_name(self, name: str) -> Resolution:
        payload = await self._client.call_async(
            self._kind.pool_info_method, *self._kind.pool_info_args()
        )
        matches = [obj for obj in self._kind.decode_pool(payload) if obj.name == name]

        if not matches:
            logger.info(
                "No object with this name for user",
                extra={"kind": self._kind.name, "object_name": name, "user": self._client.username},
            )
            return NOT_FOUND

        if len(matches) > 1:
            candidate_ids = [obj.id for obj in matches]
            if not self._allow_ambiguous:
                raise AmbiguousMatch(self._kind.name, name, candidate_ids)
            logger.warning(
                "Several objects share this name, using the first match",
                extra={"kind": self._kind.name, "object_name": name, "candidate_ids": candidate_ids},
            )

        return Resolution(matches[0])

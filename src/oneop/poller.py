"""Poll-based convergence for asynchronously provisioned objects.

OpenNebula has no push notification for lifecycle changes, so a freshly
created image is polled until it reports the target state or the budget
runs out. The wait is a timer-driven asyncio loop: each pause between two
refreshes also waits on an optional cancel event, which lets a host abort
the wait cooperatively without changing the contract.

RPC failures during a refresh are treated as "still pending". Provisioning
backends are eventually consistent and only the overall timeout ends a wait.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from .client import RpcClient, RpcError
from .config import PollBudget
from .kinds import ResourceKind
from .records import ObservedObjectState

logger = logging.getLogger(__name__)


class ConvergenceTimeout(Exception):
    """Raised when the awaited state was not observed within budget.

    Carries the last observed state (None if no refresh succeeded).
    """

    def __init__(
        self,
        kind: str,
        object_id: int,
        last_state: ObservedObjectState | None,
        attempts: int,
        elapsed_seconds: float,
    ) -> None:
        last = "none" if last_state is None else str(last_state.state)
        super().__init__(
            f"{kind} {object_id} did not converge after {attempts} attempts "
            f"in {elapsed_seconds:.1f}s (last observed state: {last})"
        )
        self.kind = kind
        self.object_id = object_id
        self.last_state = last_state
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds


class ConvergenceCancelled(Exception):
    """Raised when a wait is aborted through its cancel event."""

    def __init__(self, kind: str, object_id: int) -> None:
        super().__init__(f"Wait for {kind} {object_id} cancelled")
        self.kind = kind
        self.object_id = object_id


class ConvergencePoller:
    """Wait for a remote object to reach a target state."""

    def __init__(
        self,
        client: RpcClient,
        kind: ResourceKind,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._kind = kind
        self._clock = clock

    async def refresh(self, object_id: int) -> ObservedObjectState | None:
        """Fetch the current state. None means the refresh itself failed."""
        try:
            payload = await self._client.call_async(
                self._kind.info_method, *self._kind.info_args(object_id)
            )
        except RpcError as e:
            logger.warning(
                "Refresh failed, treating as pending",
                extra={"kind": self._kind.name, "object_id": object_id, "error": str(e)},
            )
            return None
        return self._kind.decode(payload)

    async def wait_for(
        self,
        object_id: int,
        target: Callable[[ObservedObjectState], bool],
        budget: PollBudget,
        cancel: asyncio.Event | None = None,
    ) -> ObservedObjectState:
        """Block until target(state) holds.

        Args:
            object_id: Object to poll.
            target: Predicate deciding whether an observed state is the target.
            budget: Timeout, poll interval and minimum spacing.
            cancel: Optional event; setting it aborts the wait.

        Returns:
            The first observed state satisfying the predicate.

        Raises:
            ConvergenceTimeout: If the budget is exhausted.
            ConvergenceCancelled: If the cancel event is set.
            DecodeError: If a successful payload cannot be decoded.
        """
        start = self._clock()
        deadline = start + budget.timeout_seconds
        spacing = budget.spacing_seconds
        attempts = 0
        last_state: ObservedObjectState | None = None

        logger.info(
            "Waiting for object to converge",
            extra={
                "kind": self._kind.name,
                "object_id": object_id,
                "timeout_seconds": budget.timeout_seconds,
                "spacing_seconds": spacing,
            },
        )

        while True:
            if cancel is not None and cancel.is_set():
                raise ConvergenceCancelled(self._kind.name, object_id)

            attempts += 1
            observed = await self.refresh(object_id)
            if observed is not None:
                last_state = observed
                if target(observed):
                    logger.info(
                        "Object converged",
                        extra={
                            "kind": self._kind.name,
                            "object_id": object_id,
                            "state": observed.state,
                            "attempts": attempts,
                        },
                    )
                    return observed
                logger.debug(
                    "Object pending",
                    extra={"kind": self._kind.name, "object_id": object_id, "state": observed.state},
                )

            if budget.max_attempts is not None and attempts >= budget.max_attempts:
                break

            # No further attempt fits in the window without violating the spacing
            if deadline - self._clock() < spacing:
                break

            if await self._pause(spacing, cancel):
                raise ConvergenceCancelled(self._kind.name, object_id)

        elapsed = self._clock() - start
        logger.error(
            "Timed out waiting for object to converge",
            extra={"kind": self._kind.name, "object_id": object_id, "attempts": attempts},
        )
        raise ConvergenceTimeout(self._kind.name, object_id, last_state, attempts, elapsed)

    @staticmethod
    async def _pause(seconds: float, cancel: asyncio.Event | None) -> bool:
        """Sleep, returning True if the cancel event fired first."""
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

"""OpenNebula XML-RPC session client.

Every OpenNebula API method takes the session credential ("user:password")
as its first argument and answers with an array whose first element is a
success flag:

    [True, <int id | str document>, ...]
    [False, <str error message>, <int error code>, ...]

pyone's OneServer prepends the session, checks the success flag, raises a
OneException subclass per error code and parses XML documents into its
generated bindings. This module maps those outcomes onto the operator's
error taxonomy. It performs no retries; callers decide what a failure means
for them.

SECURITY: The session credential is never logged and never part of repr().
"""

from __future__ import annotations

import asyncio
import functools
import http.client
import logging
import xmlrpc.client
from typing import Any
from xml.parsers.expat import ExpatError

import pyone

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, Config

logger = logging.getLogger(__name__)

# OpenNebula error codes, as reported in the third response element
ERROR_CODES: dict[type[pyone.OneException], int] = {
    pyone.OneAuthenticationException: 0x0100,
    pyone.OneAuthorizationException: 0x0200,
    pyone.OneNoExistsException: 0x0400,
    pyone.OneActionException: 0x0800,
    pyone.OneApiException: 0x1000,
    pyone.OneInternalException: 0x2000,
}

METHOD_PREFIX = "one."


class RpcError(Exception):
    """Base class for failed RPC calls."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message


class TransportError(RpcError):
    """Raised when the remote service cannot be reached or answers garbage."""

    pass


class RemoteRejected(RpcError):
    """Raised when the remote service reports the call as failed.

    The message is the remote service's own error text, verbatim.
    """

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        super().__init__(method, message)
        self.code = code


class RpcClient:
    """Request/response client bound to one session credential.

    The client holds no per-call mutable state and can be shared by every
    reconciler in the process.
    """

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        server: pyone.OneServer | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: XML-RPC endpoint URL (e.g. http://one:2633/RPC2).
            username: User to authenticate as.
            password: Password or login token.
            timeout_seconds: Socket timeout for each call.
            server: Preconfigured OneServer. Defaults to one built for the
                endpoint and credential.
        """
        self._endpoint = endpoint
        self._username = username

        if server is None:
            server = pyone.OneServer(
                endpoint, session=f"{username}:{password}", timeout=timeout_seconds
            )
        self._server = server

    @classmethod
    def from_config(cls, config: Config, server: pyone.OneServer | None = None) -> RpcClient:
        """Build a client from validated operator configuration."""
        logger.info("OpenNebula client configured", extra={"endpoint": config.endpoint})
        return cls(
            config.endpoint,
            config.username,
            config.password,
            timeout_seconds=config.request_timeout_seconds,
            server=server,
        )

    @property
    def username(self) -> str:
        """User the session authenticates as."""
        return self._username

    def __repr__(self) -> str:
        return f"RpcClient(endpoint={self._endpoint!r}, username={self._username!r})"

    def call(self, method: str, *args: Any) -> Any:
        """Invoke an API method and return pyone's result.

        Args:
            method: Dotted API method name (e.g. "one.template.info").
            *args: Positional arguments after the session credential.

        Returns:
            An int for allocate-style calls, a pyone binding object for
            documents.

        Raises:
            TransportError: If the call could not be completed.
            RemoteRejected: If the remote service reports failure.
        """
        logger.debug("RPC call", extra={"method": method, "arg_count": len(args)})

        # OneServer adds the "one." prefix itself
        name = method.removeprefix(METHOD_PREFIX)
        try:
            return getattr(self._server, name)(*args)
        except pyone.OneException as e:
            raise RemoteRejected(method, str(e), ERROR_CODES.get(type(e))) from e
        except xmlrpc.client.ProtocolError as e:
            raise TransportError(method, f"HTTP {e.errcode}: {e.errmsg}") from e
        except (OSError, http.client.HTTPException, ExpatError, xmlrpc.client.Error) as e:
            raise TransportError(method, str(e) or type(e).__name__) from e

    async def call_async(self, method: str, *args: Any) -> Any:
        """Invoke an API method without blocking the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.call, method, *args))


def parse_object_id(method: str, payload: Any) -> int:
    """Check the numeric id returned by allocate/clone calls.

    Raises:
        TransportError: If the payload is not an integer.
    """
    if isinstance(payload, int) and not isinstance(payload, bool):
        return payload
    if isinstance(payload, str) and payload.strip().lstrip("-").isdigit():
        return int(payload)
    raise TransportError(method, f"Expected an integer id, got {payload!r}")

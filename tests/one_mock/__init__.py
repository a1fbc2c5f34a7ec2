"""OpenNebula API mock for integration testing.

Provides an in-memory implementation of the OpenNebula XML-RPC API that
plugs into pyone.OneServer as its XML-RPC transport, so RpcClient runs
pyone's real request encoding, error mapping and document parsing.

Key Features:
- In-memory templates, images and virtual networks with ownership and permissions
- Scripted image lifecycle states (LOCKED -> READY)
- Address ranges, holds and reservations for virtual networks
- Call recording for asserting on exactly which calls were made
- Error injection, both failure responses and connection errors

Usage:
    from one_mock import MockOpenNebula

    server = MockOpenNebula()
    one = server.connect("http://one:2633/RPC2", "oneadmin:secret")
    client = RpcClient("http://one:2633/RPC2", "oneadmin", "secret", server=one)

    await Reconciler(client, get_kind("image")).create(spec)

    assert len(server.mutating_calls()) == 2
"""

from .server import (
    ACTION,
    AUTHENTICATION,
    IMAGE_ERROR,
    IMAGE_LOCKED,
    IMAGE_READY,
    NO_EXISTS,
    MockCall,
    MockObject,
    MockOpenNebula,
)

__all__ = [
    "ACTION",
    "AUTHENTICATION",
    "IMAGE_ERROR",
    "IMAGE_LOCKED",
    "IMAGE_READY",
    "NO_EXISTS",
    "MockCall",
    "MockObject",
    "MockOpenNebula",
]

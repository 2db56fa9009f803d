"""Shared fixtures for the test suite."""

import asyncio
import json
from typing import Any

import logfire
import pytest

from mcp_session import ClientSession, Server, SessionConfig
from mcp_session.demo import build_demo_server
from mcp_session.jsonrpc import MemoryTransport, create_memory_transport_pair

logfire.configure(send_to_logfire=False, console=False)


class RawPeer:
    """Speaks raw JSON frames over one end of a memory transport."""

    def __init__(self, transport: MemoryTransport):
        self.transport = transport

    async def send(self, obj: Any):
        await self.transport.send_message(obj if isinstance(obj, str) else json.dumps(obj))

    async def recv(self, timeout: float = 1.0) -> dict[str, Any]:
        return json.loads(await asyncio.wait_for(self.transport.receive_message(), timeout))

    async def request(self, id: int | str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": id, "method": method}
        if params is not None:
            msg["params"] = params
        await self.send(msg)
        return await self.recv()

    async def notify(self, method: str, params: dict[str, Any] | None = None):
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self.send(msg)

    async def initialize(self, version: str = "2025-06-18"):
        res = await self.request(
            0,
            "initialize",
            {
                "protocolVersion": version,
                "capabilities": {},
                "clientInfo": {"name": "raw", "version": "1"},
            },
        )
        await self.notify("notifications/initialized")
        return res


@pytest.fixture
def demo_server() -> Server:
    return build_demo_server(SessionConfig(page_size=50))


@pytest.fixture
async def raw_server(demo_server: Server):
    """A running demo server session driven by a RawPeer."""
    client_end, server_end = create_memory_transport_pair()
    session = demo_server.create_session(server_end)
    session.start()
    yield RawPeer(client_end), session
    await client_end.close()
    await asyncio.wait_for(session.wait_closed(), 1)


@pytest.fixture
async def connect():
    """Connect ClientSessions to servers over memory transports."""
    pairs: list[tuple[ClientSession, Any]] = []

    async def _connect(server: Server, **client_kwargs: Any) -> ClientSession:
        client_end, server_end = create_memory_transport_pair()
        server_session = server.create_session(server_end)
        server_session.start()
        client = ClientSession(client_end, **client_kwargs)
        client.start()
        pairs.append((client, server_session))
        return client

    yield _connect

    for client, server_session in pairs:
        await client.shutdown(timeout=1)
        await asyncio.wait_for(server_session.wait_closed(), 1)

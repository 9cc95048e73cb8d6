"""
Shared fixtures for the filter proxy tests.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace

import anyio
import pytest
from mcp import ClientSession

from demo_upstream_server import build_server

DEMO_SERVER_PATH = Path(__file__).parent / "demo_upstream_server.py"


class MemoryTransport:
    """In-memory stand-in for the downstream stdio transport."""

    def __init__(self):
        self.client_to_server_send, self.client_to_server_recv = anyio.create_memory_object_stream(16)
        self.server_to_client_send, self.server_to_client_recv = anyio.create_memory_object_stream(16)

    @asynccontextmanager
    async def server_side(self):
        yield self.client_to_server_recv, self.server_to_client_send

    @asynccontextmanager
    async def client_session(self):
        async with ClientSession(self.server_to_client_recv, self.client_to_server_send) as session:
            await session.initialize()
            yield session


@pytest.fixture
def upstream_calls():
    """Tool invocations seen by the demo upstream server."""
    return []


@pytest.fixture
def demo_loader(upstream_calls):
    """Module loader resolving any module name to the demo upstream."""
    loaded = []

    def loader(module_name):
        loaded.append(module_name)
        return SimpleNamespace(create_server=lambda: build_server(upstream_calls))

    loader.loaded = loaded
    return loader


@pytest.fixture
def memory_transport():
    return MemoryTransport()


@pytest.fixture
def demo_server_path():
    return str(DEMO_SERVER_PATH.resolve())

from __future__ import annotations

import sys

import pytest
import pytest_asyncio

from tests.helpers.fakes import FakeConnector, descriptor
from tests.helpers.mcp_runtime import ECHO_SERVER, build_test_env, mcp_stdio_session, write_gateway_config
from toolexec_config.servers import ServiceDescriptor
from toolexec_mcp.audit import CallAuditor
from toolexec_mcp.broker import ConnectionBroker
from toolexec_mcp.workspace import Workspace


@pytest.fixture
def workspace(tmp_path):
    return Workspace(tmp_path / "workspace")


@pytest.fixture
def connector():
    return FakeConnector()


@pytest_asyncio.fixture
async def broker(connector):
    """Broker over two fake services; closed after the test."""
    b = ConnectionBroker([descriptor("alpha"), descriptor("beta")], connector=connector, auditor=CallAuditor())
    yield b
    await b.aclose()


@pytest.fixture
def echo_descriptor() -> ServiceDescriptor:
    return ServiceDescriptor(name="echo", display_name="Echo", command=sys.executable, args=(str(ECHO_SERVER),))


@pytest_asyncio.fixture
async def gateway_session(tmp_path):
    """Initialized session for the tool-executor gateway (stdio transport) wrapping the echo server."""
    config = write_gateway_config(tmp_path)
    env = build_test_env(tmp_path, extra={"TOOLEXEC_CONFIG": str(config)})
    async with mcp_stdio_session("toolexec_mcp.gateway", env=env) as session:
        yield session

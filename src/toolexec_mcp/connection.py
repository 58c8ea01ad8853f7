"""Typed client over one wrapped MCP server spawned as a stdio subprocess."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from typing import Any, Dict, FrozenSet, Optional, TYPE_CHECKING

import anyio

from toolexec_common.errors import RemoteInvocationError, ServiceUnavailable
from toolexec_config.servers import ServiceDescriptor
from toolexec_mcp.constants import CLIENT_NAME, CLIENT_VERSION, CLOSE_TIMEOUT_S, CONNECT_TIMEOUT_S

if TYPE_CHECKING:
    from mcp import ClientSession

logger = logging.getLogger(__name__)


def _error_text(result: Dict[str, Any]) -> str:
    parts = []
    for c in result.get("content") or []:
        if isinstance(c, dict) and c.get("type") == "text":
            parts.append(str(c.get("text", "")))
    return "\n".join(parts) or "remote tool reported an error"


class ServiceConnection:
    """
    One long-lived ClientSession to one subprocess.

    The stdio_client / ClientSession context managers are entered and exited by
    a dedicated lifecycle task, so ``close()`` may be awaited from any task
    (request handler, idle sweeper, shutdown hook).
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        *,
        connect_timeout: float = CONNECT_TIMEOUT_S,
        close_timeout: float = CLOSE_TIMEOUT_S,
    ) -> None:
        self.descriptor = descriptor
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout

        self._session: Optional["ClientSession"] = None
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = asyncio.Event()

        # None means "unknown": every capability name is forwarded to the server
        self.tool_names: Optional[FrozenSet[str]] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def is_open(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    def _server_params(self):
        from mcp import StdioServerParameters

        env = dict(os.environ)
        env.update(self.descriptor.env or {})
        return StdioServerParameters(
            command=self.descriptor.command,
            args=list(self.descriptor.args),
            env=env,
        )

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> "ServiceConnection":
        if self._task is not None:
            raise RuntimeError(f"connection to {self.name} already opened")

        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-connection:{self.name}")

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            await self._abort()
            raise ServiceUnavailable(
                f"{self.name}: handshake did not complete within {self._connect_timeout}s"
            ) from None
        except BaseException:
            await self._abort()
            raise
        return self

    async def _run(self) -> None:
        from mcp import ClientSession
        from mcp.client.stdio import stdio_client
        from mcp.types import Implementation

        assert self._ready is not None
        try:
            async with stdio_client(self._server_params()) as (read, write):
                async with ClientSession(
                    read,
                    write,
                    client_info=Implementation(name=f"{CLIENT_NAME}-{self.name}", version=CLIENT_VERSION),
                ) as session:
                    await session.initialize()
                    self.tool_names = await self._list_tool_names(session)
                    self._session = session
                    if not self._ready.done():
                        self._ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                logger.warning("Connection to %s lost: %s", self.name, e)
        finally:
            self._session = None

    async def _list_tool_names(self, session: "ClientSession") -> Optional[FrozenSet[str]]:
        try:
            listed = await session.list_tools()
        except Exception as e:
            logger.warning("Could not list tools of %s: %s", self.name, e)
            return None
        if getattr(listed, "nextCursor", None):
            # partial page: membership cannot be decided locally
            return None
        return frozenset(t.name for t in listed.tools)

    async def _abort(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await self._task

    async def close(self) -> None:
        """Ask the lifecycle task to leave the session and stop the subprocess."""
        if self._task is None or self._task.done():
            self._session = None
            return

        self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("Connection to %s did not close within %ss; cancelling", self.name, self._close_timeout)
            await self._abort()

    # -- calls --------------------------------------------------------------

    def has_capability(self, capability: str) -> bool:
        return self.tool_names is None or capability in self.tool_names

    async def call_tool(self, capability: str, arguments: Dict[str, Any] | None = None) -> Dict[str, Any]:
        from mcp.shared.exceptions import McpError

        session = self._session
        if session is None:
            raise ServiceUnavailable(f"{self.name} MCP is not connected")

        try:
            res = await session.call_tool(capability, dict(arguments or {}))
        except McpError as e:
            raise RemoteInvocationError(str(e), service=self.name, capability=capability) from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as e:
            # subprocess went away; let the lifecycle task unwind so the broker reconnects next time
            self._closing.set()
            raise ServiceUnavailable(f"{self.name} MCP connection closed") from e

        result = res.model_dump(mode="json", by_alias=True, exclude_none=True)
        if result.get("isError"):
            raise RemoteInvocationError(_error_text(result), service=self.name, capability=capability)
        return result


async def open_connection(descriptor: ServiceDescriptor) -> ServiceConnection:
    """Default connector used by the broker: spawn + handshake."""
    return await ServiceConnection(descriptor).open()

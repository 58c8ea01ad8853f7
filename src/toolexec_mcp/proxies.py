"""Per-service dynamic proxies: attribute access -> remote tool call, with result size triage."""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from toolexec_common.errors import PersistenceError, ServiceUnavailable, UnknownCapability
from toolexec_mcp.audit import AuditEntry
from toolexec_mcp.broker import ConnectionBroker
from toolexec_mcp.constants import (
    MAX_RESULT_CHARS,
    MCP_RESULTS_DIR,
    RESULT_PREVIEW_CHARS,
    TRUNCATED_PREVIEW_CHARS,
)
from toolexec_mcp.workspace import Workspace

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _serialize(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def result_filename(service: str, capability: str) -> str:
    """``{epoch_ms}-{service}-{capability}-{suffix}.json``, safe for any tool name."""
    stamp = int(time.time() * 1000)
    safe_cap = _UNSAFE_FILENAME_CHARS.sub("_", capability)
    safe_svc = _UNSAFE_FILENAME_CHARS.sub("_", service)
    return f"{stamp}-{safe_svc}-{safe_cap}-{uuid.uuid4().hex[:8]}.json"


class CapabilityProxy:
    """
    Stands in for one wrapped MCP server inside a script.

    Any attribute (``await context7.resolve_library_id({...})``) or item
    (``await services["context7"]["resolve-library-id"]({...})``) yields an async
    handler for the remote tool of that name. Handlers are created on first
    access and cached in ``_handlers``; whether the name exists is decided
    against the tool list the server declared once connected.
    """

    def __init__(
        self,
        service: str,
        broker: ConnectionBroker,
        workspace: Workspace,
        *,
        max_result_chars: int = MAX_RESULT_CHARS,
    ) -> None:
        self._service = service
        self._broker = broker
        self._workspace = workspace
        self._max_result_chars = max_result_chars
        self._handlers: Dict[str, Handler] = {}

    def __repr__(self) -> str:
        return f"<mcp service {self._service}>"

    def __getattr__(self, name: str) -> Handler:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.capability(name)

    def __getitem__(self, name: str) -> Handler:
        return self.capability(name)

    def __dir__(self):
        state = self._broker.state(self._service)
        connection = state.connection if state is not None else None
        names = getattr(connection, "tool_names", None) or ()
        return sorted(names)

    def capability(self, name: str) -> Handler:
        handler = self._handlers.get(name)
        if handler is None:
            handler = self._make_handler(name)
            self._handlers[name] = handler
        return handler

    def _make_handler(self, capability: str) -> Handler:
        async def handler(arguments: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
            args = dict(arguments or {})
            args.update(kwargs)
            return await self.invoke(capability, args)

        handler.__name__ = capability
        handler.__qualname__ = f"{self._service}.{capability}"
        return handler

    def _resolve_name(self, connection: Any, capability: str) -> str:
        if connection.has_capability(capability):
            return capability
        # snake_case attribute access for kebab-case tool names
        dashed = capability.replace("_", "-")
        if dashed != capability and connection.has_capability(dashed):
            return dashed
        raise UnknownCapability(f"unknown capability {capability!r} for the {self._service} MCP")

    async def invoke(self, capability: str, arguments: Dict[str, Any]) -> Any:
        connection = await self._broker.get_connection(self._service)
        if connection is None:
            raise ServiceUnavailable(f"{self._service} MCP is not available")

        tool = self._resolve_name(connection, capability)

        started = time.time()
        t0 = time.perf_counter()
        try:
            result = await connection.call_tool(tool, arguments)
        except Exception as e:
            self._broker.auditor.record(
                AuditEntry(
                    timestamp=started,
                    service=self._service,
                    capability=tool,
                    arguments=arguments,
                    duration_ms=int((time.perf_counter() - t0) * 1000),
                    error=str(e) or e.__class__.__name__,
                )
            )
            raise

        self._broker.auditor.record(
            AuditEntry(
                timestamp=started,
                service=self._service,
                capability=tool,
                arguments=arguments,
                duration_ms=int((time.perf_counter() - t0) * 1000),
            )
        )
        self._broker.touch(self._service)
        return await self._triage(tool, result)

    async def _triage(self, capability: str, result: Any) -> Any:
        serialized = _serialize(result)
        if len(serialized) <= self._max_result_chars:
            return result

        path = f"{MCP_RESULTS_DIR}/{result_filename(self._service, capability)}"
        try:
            await self._persist(path, result)
        except PersistenceError as e:
            logger.warning("Failed to auto-save large result: %s", e)
            return {
                "warning": "Result too large to auto-save, returning truncated",
                "size": len(serialized),
                "preview": serialized[:TRUNCATED_PREVIEW_CHARS],
            }

        return {
            "savedTo": path,
            "size": len(serialized),
            "preview": serialized[:RESULT_PREVIEW_CHARS] + "...",
            "hint": f'Full result saved to workspace. Use await workspace.read_json("{path}") to access.',
        }

    async def _persist(self, path: str, result: Any) -> None:
        try:
            await self._workspace.mkdir(MCP_RESULTS_DIR)
            await self._workspace.write_json(path, result)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"{path}: {e}") from e


def build_proxies(broker: ConnectionBroker, workspace: Workspace) -> Dict[str, CapabilityProxy]:
    """One fresh proxy per configured service, keyed by service name."""
    return {d.name: CapabilityProxy(d.name, broker, workspace) for d in broker.descriptors}

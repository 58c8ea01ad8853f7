from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from toolexec_common.errors import typed_error
from toolexec_config.servers import ServiceDescriptor, load_service_descriptors
from toolexec_config.settings import registry_dir, workspace_dir
from toolexec_mcp.audit import CallAuditor
from toolexec_mcp.broker import ConnectionBroker, Connector
from toolexec_mcp.connection import open_connection
from toolexec_mcp.constants import DEFAULT_TIMEOUT_MS
from toolexec_mcp.registry import ToolRegistry
from toolexec_mcp.runtime import ScriptEngine
from toolexec_mcp.workspace import Workspace

logger = logging.getLogger(__name__)


class ToolExecutor:
    """
    Everything the gateway tools delegate to:
    - ToolRegistry for search / schema lookup
    - ConnectionBroker (+ CallAuditor) for the wrapped servers
    - ScriptEngine for execute_code

    Built once per server lifespan; no module-level state.
    """

    def __init__(
        self,
        descriptors: List[ServiceDescriptor],
        *,
        registry: ToolRegistry,
        workspace: Workspace,
        connector: Connector = open_connection,
        auditor: CallAuditor | None = None,
    ) -> None:
        self.registry = registry
        self.workspace = workspace
        self.broker = ConnectionBroker(descriptors, connector=connector, auditor=auditor)
        self.engine = ScriptEngine(self.broker, workspace)

    @classmethod
    def from_settings(cls, config_path: Optional[Path] = None) -> "ToolExecutor":
        return cls(
            load_service_descriptors(config_path),
            registry=ToolRegistry(registry_dir()),
            workspace=Workspace(workspace_dir()),
        )

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        self.broker.start()
        removed = await self.workspace.cleanup_results()
        if removed:
            logger.info("Removed %d stale auto-saved results", removed)
        logger.info("Available MCP clients: %s", ", ".join(self.broker.list_available()))

    async def aclose(self) -> None:
        logger.info("Shutting down...")
        await self.broker.aclose()

    # -- operations ---------------------------------------------------------

    async def search_tools(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        response = self.registry.search(query, limit=limit, offset=offset)
        results = [r["tool"].slim() for r in response["results"]]

        out: Dict[str, Any] = {
            "results": results,
            "count": len(results),
            "limit": limit,
            "offset": offset,
            "has_more": response["total"] > offset + len(results),
            "source": response["source"],
        }
        if response.get("suggestion"):
            out["suggestion"] = response["suggestion"]
        return out

    async def get_tool_schema(self, name: str) -> Dict[str, Any]:
        tool = self.registry.lookup(name)
        if tool is None:
            return typed_error(
                "not_found",
                f"Tool not found: {name}",
                suggestion="Use search_tools to find available tools first",
            )
        return tool.full()

    async def execute_code(self, code: str, timeout: int = DEFAULT_TIMEOUT_MS) -> Dict[str, Any]:
        result = await self.engine.execute(code, timeout)
        return result.to_dict()

    def audit_recent(self, limit: int = 100) -> Dict[str, Any]:
        records = []
        for entry in self.broker.auditor.recent(limit):
            records.append(entry.to_dict() if hasattr(entry, "to_dict") else entry)
        return {"records": records}

    def services_status(self) -> Dict[str, Any]:
        return {
            "available": self.broker.list_available(),
            "connected": self.broker.list_connected(),
        }

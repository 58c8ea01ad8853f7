import logging
import os
import signal
import sys
from contextlib import asynccontextmanager, suppress
from typing import Annotated, AsyncIterator, Callable

import anyio
from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from toolexec_common.telemetry import telemetry_recent
from toolexec_common.tooling import InstrumentConfig, instrument_async_tool
from toolexec_config.settings import init_runtime, mcp_transport
from toolexec_mcp.constants import DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS, MIN_TIMEOUT_MS
from toolexec_mcp.executor import ToolExecutor


logger = logging.getLogger(__name__)

# Swapped in tests to build the executor from fixtures instead of settings.
executor_factory: Callable[[], ToolExecutor] = ToolExecutor.from_settings


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[ToolExecutor]:
    executor = executor_factory()
    await executor.start()
    try:
        yield executor
    finally:
        # stdin closed / SIGINT / SIGTERM: never leave subprocesses behind
        with anyio.CancelScope(shield=True):
            await executor.aclose()


mcp = FastMCP(
    name="tool-executor",
    instructions=(
        "Gateway to several wrapped MCP servers. Find tools with search_tools, "
        "fetch parameters with get_tool_schema, then call them from execute_code."
    ),
    lifespan=lifespan,
)

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=False)
_OPEN_WORLD = ToolAnnotations(readOnlyHint=False, destructiveHint=True, idempotentHint=False, openWorldHint=True)


def _executor() -> ToolExecutor:
    return mcp.get_context().request_context.lifespan_context


def gateway_tool(name: str, description: str, annotations: ToolAnnotations = _READ_ONLY):
    """
    Registers an MCP tool and applies instrumentation (corr id, timing, telemetry).
    Keeps tool signature stable for MCP schema generation.
    """
    def decorator(fn):
        wrapped = instrument_async_tool(InstrumentConfig(kind="tool", name=name))(fn)
        return mcp.tool(name=name, description=description, annotations=annotations)(wrapped)

    return decorator


@gateway_tool(
    "search_tools",
    "Search for MCP tools across all wrapped servers. Returns slim results "
    "(name, server, description, example) for discovery.\n\n"
    "Use get_tool_schema(name) to get the full inputSchema when you're ready to call a specific tool.\n\n"
    "Example queries:\n"
    '- "semantic code search" - Serena code navigation\n'
    '- "generate diagram" - Mermaid diagram tools\n'
    '- "library docs" - Context7 documentation lookup',
)
async def search_tools(
    query: Annotated[str, Field(min_length=1, description="Search query for finding relevant tools")],
    limit: Annotated[int, Field(ge=1, le=50, description="Maximum results to return")] = 10,
    offset: Annotated[int, Field(ge=0, description="Number of ranked results to skip")] = 0,
) -> dict:
    return await _executor().search_tools(query, limit=limit, offset=offset)


@gateway_tool(
    "get_tool_schema",
    "Get the full inputSchema for a specific tool. Use after search_tools to get "
    "parameter details before calling execute_code.",
)
async def get_tool_schema(
    name: Annotated[str, Field(min_length=1, description="Tool name (from search_tools results)")],
) -> dict:
    return await _executor().get_tool_schema(name)


@gateway_tool(
    "execute_code",
    "Execute Python code with access to all wrapped MCP servers and workspace helpers.\n\n"
    "The code is the body of an async function: use `await` and `return` freely.\n\n"
    "**MCP servers** are bound by name (see services_status); every attribute is an async tool call:\n"
    "    result = await context7.resolve_library_id({\"libraryName\": \"react\"})\n"
    "Tool names that are not identifiers: services[\"context7\"][\"resolve-library-id\"]({...}).\n"
    "Large results are saved to the workspace and replaced by a {savedTo, size, preview, hint} reference.\n\n"
    "**Workspace API** (async, scoped to ./workspace/):\n"
    "- workspace.read(path), workspace.write(path, data), workspace.append(path, data)\n"
    "- workspace.read_json(path), workspace.write_json(path, data)\n"
    "- workspace.list(path), workspace.glob(pattern), workspace.exists(path), workspace.mkdir(path)\n\n"
    "**Also available:** console.log/info/warn/error/debug, print, json.dumps/loads, "
    "sleep(seconds), gather(*calls). Imports are not available.\n\n"
    "Output is returned as a logs array (summarised when large).",
    annotations=_OPEN_WORLD,
)
async def execute_code(
    code: Annotated[str, Field(min_length=1, description="Python code to execute")],
    timeout: Annotated[
        int, Field(ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS, description="Execution timeout in ms")
    ] = DEFAULT_TIMEOUT_MS,
) -> dict:
    return await _executor().execute_code(code, timeout)


@gateway_tool("audit_recent", "Most recent wrapped-tool calls (newest last) with duration and error, if any.")
async def audit_recent(
    limit: Annotated[int, Field(ge=1, le=1000)] = 100,
) -> dict:
    return _executor().audit_recent(limit)


@gateway_tool("services_status", "Configured MCP servers and which of them currently hold a live connection.")
async def services_status() -> dict:
    return _executor().services_status()


@gateway_tool("telemetry_recent", "Last N gateway telemetry records (secrets redacted).")
async def gateway_telemetry_recent(
    n: Annotated[int, Field(ge=1, le=200)] = 50,
) -> dict:
    return telemetry_recent(n=n)


def _terminate(signum, frame) -> None:
    # unwind the event loop like Ctrl-C so the lifespan shutdown runs
    raise KeyboardInterrupt


def _exit_now(code: int = 0) -> None:
    # the stdio reader thread blocks on stdin and would keep the interpreter alive
    logging.shutdown()
    with suppress(OSError, ValueError):
        sys.stdout.flush()
    os._exit(code)


def main() -> None:
    # Entry points (console_scripts) call main() directly, so we must perform
    # runtime initialization here (dotenv + logging).
    init_runtime()
    signal.signal(signal.SIGTERM, _terminate)
    transport = mcp_transport()
    try:
        mcp.run(transport=transport)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        _exit_now(0)


if __name__ == "__main__":
    main()

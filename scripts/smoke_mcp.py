"""
Smoke script for the tool-executor gateway over stdio.

It performs:
 1) Spawns the gateway module and lists its tools
 2) search_tools + get_tool_schema against the local registry
 3) execute_code with a script that only touches the workspace (no wrapped server needed)
 4) Optionally calls one wrapped server when TOOLEXEC_SMOKE_CODE is set, e.g.
      TOOLEXEC_SMOKE_CODE="return await context7.resolve_library_id(libraryName='react')"
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[1]

_WORKSPACE_SCRIPT = (
    "await workspace.write_json('smoke/hello.json', {'ok': True})\n"
    "console.log(await workspace.list('smoke'))\n"
    "return await workspace.read_json('smoke/hello.json')"
)


def _pretty(x: Any) -> str:
    try:
        return json.dumps(x, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(x)


def _unwrap_tool_result(res: Any) -> Any:
    content = getattr(res, "content", None)
    if not content:
        return res
    text = getattr(content[0], "text", None)
    if isinstance(text, str) and text.strip().startswith("{"):
        return json.loads(text)
    return text


async def smoke() -> bool:
    from mcp import ClientSession
    from mcp.client.stdio import StdioServerParameters, stdio_client

    gateway_module = os.getenv("TOOLEXEC_GATEWAY_MODULE", "toolexec_mcp.gateway")
    python_cmd = os.getenv("MCP_PYTHON") or sys.executable

    print(f"[smoke] Repo root: {_REPO_ROOT}")
    print(f"[smoke] Gateway module: {gateway_module}")
    print(f"[smoke] Python: {python_cmd}")

    env = dict(os.environ, MCP_TRANSPORT="stdio")
    env.setdefault("TOOLEXEC_REPO_ROOT", str(_REPO_ROOT))
    src = str(_REPO_ROOT / "src")
    env["PYTHONPATH"] = os.pathsep.join(p for p in (src, env.get("PYTHONPATH")) if p)

    server = StdioServerParameters(command=python_cmd, args=["-m", gateway_module], env=env)

    ok = True

    async with stdio_client(server) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()

            tools = await session.list_tools()
            print("\n[smoke] TOOLS:")
            for t in tools.tools:
                print(f" - {t.name}")

            found = _unwrap_tool_result(await session.call_tool("search_tools", {"query": "diagram", "limit": 3}))
            print("\n[smoke] CALL search_tools(diagram):")
            print(_pretty(found))

            results = found.get("results") if isinstance(found, dict) else None
            if results:
                name = results[0]["name"]
                schema = _unwrap_tool_result(await session.call_tool("get_tool_schema", {"name": name}))
                print(f"\n[smoke] CALL get_tool_schema({name}):")
                print(_pretty(schema))
            else:
                print("[smoke] WARN: search_tools returned nothing; is TOOLEXEC_REGISTRY_DIR set?")
                ok = False

            out = _unwrap_tool_result(await session.call_tool("execute_code", {"code": _WORKSPACE_SCRIPT}))
            print("\n[smoke] CALL execute_code(workspace round trip):")
            print(_pretty(out))
            if not isinstance(out, dict) or out.get("error"):
                ok = False

            extra = os.getenv("TOOLEXEC_SMOKE_CODE")
            if extra:
                out = _unwrap_tool_result(
                    await session.call_tool("execute_code", {"code": extra, "timeout": 120000})
                )
                print("\n[smoke] CALL execute_code(TOOLEXEC_SMOKE_CODE):")
                print(_pretty(out))
                if not isinstance(out, dict) or out.get("error"):
                    print("[smoke] WARN: wrapped server call failed")
                    ok = False

            status = _unwrap_tool_result(await session.call_tool("services_status", {}))
            print("\n[smoke] CALL services_status:")
            print(_pretty(status))

    return ok


async def main() -> int:
    ok = await smoke()
    print("\n[smoke] OK" if ok else "\n[smoke] Completed with warnings")
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))

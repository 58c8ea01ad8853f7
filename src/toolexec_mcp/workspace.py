"""Storage helper bound into scripts: async file operations scoped to one root."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List

from toolexec_common.errors import WorkspacePathError
from toolexec_mcp.constants import MCP_RESULTS_DIR, MCP_RESULTS_MAX_AGE_S

logger = logging.getLogger(__name__)


class Workspace:
    """
    File operations confined to ``root``.

    Every path is resolved against the root; absolute paths and anything that
    resolves outside the root raise WorkspacePathError. Blocking I/O runs in a
    worker thread so each call is an await point for the event loop.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"<workspace {self.root}>"

    def resolve(self, path: str | Path) -> Path:
        raw = str(path).strip() if path is not None else ""
        if not raw:
            raise WorkspacePathError("Path traversal blocked: empty path")

        rel = Path(raw)
        if rel.is_absolute():
            raise WorkspacePathError(f"Path traversal blocked: {path}")

        full = (self.root / rel).resolve()
        if full != self.root and self.root not in full.parents:
            raise WorkspacePathError(f"Path traversal blocked: {path}")
        return full

    # -- text / json --------------------------------------------------------

    async def read(self, path: str) -> str:
        full = self.resolve(path)
        return await asyncio.to_thread(full.read_text, encoding="utf-8")

    async def write(self, path: str, data: str) -> None:
        full = self.resolve(path)
        await asyncio.to_thread(full.write_text, str(data), encoding="utf-8")

    async def append(self, path: str, data: str) -> None:
        full = self.resolve(path)

        def _append() -> None:
            with full.open("a", encoding="utf-8") as f:
                f.write(str(data))

        await asyncio.to_thread(_append)

    async def delete(self, path: str) -> None:
        full = self.resolve(path)
        await asyncio.to_thread(full.unlink)

    async def read_json(self, path: str) -> Any:
        return json.loads(await self.read(path))

    async def write_json(self, path: str, data: Any) -> None:
        await self.write(path, json.dumps(data, indent=2, ensure_ascii=False))

    # -- binary -------------------------------------------------------------

    async def read_bytes(self, path: str) -> bytes:
        full = self.resolve(path)
        return await asyncio.to_thread(full.read_bytes)

    async def write_bytes(self, path: str, data: bytes) -> None:
        full = self.resolve(path)
        await asyncio.to_thread(full.write_bytes, bytes(data))

    # -- directories --------------------------------------------------------

    async def list(self, path: str = ".") -> List[str]:
        full = self.resolve(path)
        return await asyncio.to_thread(lambda: sorted(p.name for p in full.iterdir()))

    async def glob(self, pattern: str) -> List[str]:
        if ".." in pattern or Path(pattern).is_absolute():
            raise WorkspacePathError(f"Glob traversal blocked: {pattern}")

        def _glob() -> List[str]:
            return sorted(p.relative_to(self.root).as_posix() for p in self.root.glob(pattern))

        return await asyncio.to_thread(_glob)

    async def mkdir(self, path: str) -> None:
        full = self.resolve(path)
        await asyncio.to_thread(full.mkdir, parents=True, exist_ok=True)

    async def exists(self, path: str) -> bool:
        full = self.resolve(path)
        return await asyncio.to_thread(full.exists)

    async def stat(self, path: str) -> Dict[str, Any]:
        full = self.resolve(path)
        st = await asyncio.to_thread(full.stat)
        return {"size": st.st_size, "mtime": st.st_mtime, "is_dir": full.is_dir()}

    # -- auto-saved results -------------------------------------------------

    async def cleanup_results(self, max_age_s: float = MCP_RESULTS_MAX_AGE_S) -> int:
        """Delete auto-saved results older than ``max_age_s``. Returns how many were removed."""
        results_dir = self.root / MCP_RESULTS_DIR

        def _cleanup() -> int:
            if not results_dir.is_dir():
                return 0
            cutoff = time.time() - max_age_s
            deleted = 0
            for p in results_dir.iterdir():
                if p.is_file() and p.stat().st_mtime < cutoff:
                    p.unlink()
                    deleted += 1
            return deleted

        try:
            return await asyncio.to_thread(_cleanup)
        except OSError:
            logger.warning("cleanup_results failed in %s", results_dir, exc_info=True)
            return 0


class ScriptWorkspace:
    """
    The ``workspace`` binding scripts see: the async file API of a Workspace
    without its host root. Scripts cannot read ``_``-prefixed attributes, so
    the wrapped Workspace stays out of reach.
    """

    __slots__ = ("_ws",)

    def __init__(self, workspace: Workspace) -> None:
        self._ws = workspace

    def __repr__(self) -> str:
        return "<workspace>"

    async def read(self, path: str) -> str:
        return await self._ws.read(path)

    async def write(self, path: str, data: str) -> None:
        await self._ws.write(path, data)

    async def append(self, path: str, data: str) -> None:
        await self._ws.append(path, data)

    async def delete(self, path: str) -> None:
        await self._ws.delete(path)

    async def read_json(self, path: str) -> Any:
        return await self._ws.read_json(path)

    async def write_json(self, path: str, data: Any) -> None:
        await self._ws.write_json(path, data)

    async def read_bytes(self, path: str) -> bytes:
        return await self._ws.read_bytes(path)

    async def write_bytes(self, path: str, data: bytes) -> None:
        await self._ws.write_bytes(path, data)

    async def list(self, path: str = ".") -> List[str]:
        return await self._ws.list(path)

    async def glob(self, pattern: str) -> List[str]:
        return await self._ws.glob(pattern)

    async def mkdir(self, path: str) -> None:
        await self._ws.mkdir(path)

    async def exists(self, path: str) -> bool:
        return await self._ws.exists(path)

    async def stat(self, path: str) -> Dict[str, Any]:
        return await self._ws.stat(path)

"""Tool registry: YAML tool definitions on disk, keyword search, full schema lookup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

NO_RESULTS_SUGGESTION = (
    "Try broader terms like 'image', 'code search', 'diagram', "
    "or browse categories: game-dev, knowledge, ai-models, web, ui"
)


class ToolDefinition(BaseModel):
    """One wrapped tool as described in ``registry/<category>/<server>/<tool>.yaml``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    server: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    example: str = ""
    notes: Optional[str] = None

    def search_text(self) -> str:
        return f"{self.name} {self.description} {self.category} {self.server}".lower()

    def slim(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "server": self.server,
            "description": self.description,
            "example": self.example,
        }

    def full(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "server": self.server,
            "description": self.description,
            "inputSchema": self.input_schema,
            "example": self.example,
            "notes": self.notes,
        }


class ToolRegistry:
    """
    Reads tool definitions from ``root`` (any depth, ``*.yaml`` / ``*.yml``).

    Definitions are loaded once and cached; ``reload()`` rereads the tree.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._tools: Optional[List[ToolDefinition]] = None

    # ── Loading ───────────────────────────────────────────────────────────

    def _files(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.rglob("*") if p.suffix in {".yaml", ".yml"} and p.is_file())

    @staticmethod
    def _load_definition(path: Path) -> Optional[ToolDefinition]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return ToolDefinition.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.warning("Invalid tool definition %s: %s", path, e)
            return None

    def reload(self) -> List[ToolDefinition]:
        tools = []
        for path in self._files():
            tool = self._load_definition(path)
            if tool is not None:
                tools.append(tool)
        self._tools = tools
        return tools

    def tools(self) -> List[ToolDefinition]:
        if self._tools is None:
            return self.reload()
        return self._tools

    # ── Lookup ────────────────────────────────────────────────────────────

    def lookup(self, name: str) -> Optional[ToolDefinition]:
        for tool in self.tools():
            if tool.name == name:
                return tool
        return None

    def categories(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def list_category(self, category: str) -> List[ToolDefinition]:
        return [t for t in self.tools() if t.category == category]

    # ── Search ────────────────────────────────────────────────────────────

    @staticmethod
    def score(tool: ToolDefinition, terms: List[str]) -> float:
        if not terms:
            return 0.0
        text = tool.search_text()
        name = tool.name.lower()
        category = tool.category.lower()

        total = 0
        for term in terms:
            if term in text:
                total += 1
                if term in name:
                    total += 2
                if category and term in category:
                    total += 1
        return total / len(terms)

    def search(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        """
        Ranked keyword search. Returns::

            {"results": [{"tool": ToolDefinition, "score": float}, ...],
             "total": int, "source": "local", "suggestion"?: str}
        """
        terms = [t for t in (query or "").lower().split() if t]
        scored = []
        for tool in self.tools():
            s = self.score(tool, terms)
            if s > 0:
                scored.append({"tool": tool, "score": s})

        # sorted() is stable: ties keep registry file order
        scored = sorted(scored, key=lambda r: r["score"], reverse=True)

        off = max(int(offset or 0), 0)
        lim = max(int(limit), 0)
        out: Dict[str, Any] = {
            "results": scored[off: off + lim],
            "total": len(scored),
            "source": "local",
        }
        if not scored:
            out["suggestion"] = NO_RESULTS_SUGGESTION
        return out

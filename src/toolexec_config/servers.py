"""Wrapped MCP server descriptors: config file discovery, validation and defaults."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from toolexec_config.settings import env

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = (
    "tool-executor.config.json",
    ".tool-executorrc.json",
)

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


class ServiceDescriptor(BaseModel):
    """How to launch and reach one wrapped MCP server. Immutable."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    display_name: str = Field(alias="displayName", min_length=1)
    command: str = Field(min_length=1)
    args: Tuple[str, ...] = ()
    env: Optional[Dict[str, str]] = None


class GatewayConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    schema_url: Optional[str] = Field(default=None, alias="$schema")
    servers: List[ServiceDescriptor] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_names(self) -> "GatewayConfig":
        seen: set[str] = set()
        for s in self.servers:
            if s.name in seen:
                raise ValueError(f"duplicate server name: {s.name}")
            seen.add(s.name)
        return self


def expand_env_vars(obj: Any) -> Any:
    """Recursively replace ``${VAR}`` in strings with the environment value (missing -> "")."""
    if isinstance(obj, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), obj)
    if isinstance(obj, list):
        return [expand_env_vars(x) for x in obj]
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    return obj


def find_config_file(start_dir: Path | None = None) -> Optional[Path]:
    """
    Locate the server config file. Precedence:
      1) TOOLEXEC_CONFIG (explicit path)
      2) first of CONFIG_FILENAMES in start_dir (default: cwd)
    """
    explicit = env("CONFIG")
    if explicit:
        p = Path(explicit).expanduser()
        return p if p.is_file() else None

    base = Path(start_dir) if start_dir is not None else Path.cwd()
    for filename in CONFIG_FILENAMES:
        p = base / filename
        if p.is_file():
            return p
    return None


def load_config(config_path: Path | str | None = None) -> Optional[GatewayConfig]:
    """Parse + validate a config file. Returns None (and logs) when absent or invalid."""
    path = Path(config_path) if config_path else find_config_file()
    if path is None or not path.is_file():
        return None

    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
        return GatewayConfig.model_validate(expand_env_vars(parsed))
    except (OSError, ValueError, ValidationError) as e:
        logger.error("Failed to load config from %s: %s", path, e)
        return None


def default_descriptors() -> List[ServiceDescriptor]:
    """Built-in servers used when no config file is found."""
    gemini_key = os.environ.get("GEMINI_API_KEY", "")
    return [
        ServiceDescriptor(name="notebooklm", display_name="NotebookLM", command="npx", args=("-y", "notebooklm-mcp")),
        ServiceDescriptor(
            name="sequentialThinking",
            display_name="Sequential Thinking",
            command="npx",
            args=("-y", "@modelcontextprotocol/server-sequential-thinking"),
        ),
        ServiceDescriptor(name="context7", display_name="Context7", command="npx", args=("-y", "@upstash/context7-mcp")),
        ServiceDescriptor(
            name="gemini",
            display_name="Gemini",
            command="npx",
            args=("-y", "@rlabs-inc/gemini-mcp"),
            env={"GEMINI_API_KEY": gemini_key},
        ),
        ServiceDescriptor(name="shadcn", display_name="shadcn", command="npx", args=("-y", "shadcn-ui-mcp-server")),
        ServiceDescriptor(name="mermaid", display_name="Mermaid", command="npx", args=("-y", "mcp-mermaid")),
        ServiceDescriptor(
            name="apify",
            display_name="Apify",
            command="npx",
            args=("-y", "@apify/actors-mcp-server"),
            env={"APIFY_TOKEN": os.environ.get("APIFY_TOKEN", "")},
        ),
        ServiceDescriptor(
            name="serena",
            display_name="Serena",
            command="uvx",
            args=("--from", "git+https://github.com/oraios/serena", "serena", "start-mcp-server"),
        ),
        ServiceDescriptor(
            name="nanoBanana",
            display_name="Nano Banana",
            command="uvx",
            args=("nanobanana-mcp-server@latest",),
            env={"GEMINI_API_KEY": gemini_key},
        ),
    ]


def load_service_descriptors(config_path: Path | str | None = None) -> List[ServiceDescriptor]:
    config = load_config(config_path)
    if config is not None:
        logger.info("Loaded config with %d servers", len(config.servers))
        return list(config.servers)

    logger.info("No config file found, using default servers")
    return default_descriptors()

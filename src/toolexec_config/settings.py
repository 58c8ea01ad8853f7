"""Process-level settings: repo root, dotenv, data directories, logging.

Everything is read lazily from the environment; importing this module has no
side effects. Entry points call ``init_runtime()`` once.
"""

from __future__ import annotations

import logging
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

ENV_PREFIX = "TOOLEXEC_"

_ROOT_MARKERS = ("pyproject.toml", ".git")
_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read ``TOOLEXEC_<name>``; empty values count as unset."""
    value = os.getenv(ENV_PREFIX + name)
    return value if value else default


def env_flag(name: str) -> bool:
    return (env(name, "") or "").strip().lower() in _TRUTHY


def _marked_root(candidates: Iterable[Path]) -> Optional[Path]:
    for start in candidates:
        start = start.resolve()
        for p in (start, *start.parents):
            if any((p / marker).exists() for marker in _ROOT_MARKERS):
                return p
    return None


@lru_cache(maxsize=1)
def repo_root() -> Path:
    """
    TOOLEXEC_REPO_ROOT if set (must be an existing directory), else the first
    ancestor of the cwd or of this package that holds pyproject.toml or .git.
    """
    explicit = env("REPO_ROOT")
    if explicit:
        p = Path(explicit).expanduser().absolute()
        if not p.is_dir():
            raise RuntimeError(f"{ENV_PREFIX}REPO_ROOT is not a directory: {p}")
        return p.resolve()

    here = Path(__file__).resolve().parent
    found = _marked_root([Path.cwd(), here])
    if found is not None:
        return found
    # installed without a checkout: repo/src/toolexec_config -> repo
    return here.parents[1] if len(here.parents) >= 2 else Path.cwd().resolve()


@lru_cache(maxsize=1)
def load_env_once() -> Optional[Path]:
    """Load TOOLEXEC_ENV_FILE, else ``<repo>/.env``. Existing variables win."""
    explicit = env("ENV_FILE")
    candidates = [Path(explicit).expanduser()] if explicit else []
    candidates.append(repo_root() / ".env")

    for p in candidates:
        if p.is_file():
            load_dotenv(dotenv_path=str(p), override=False)
            return p.resolve()
    return None


def _data_dir(name: str, *default_parts: str) -> Path:
    override = env(name)
    if override:
        return Path(override).expanduser().resolve()
    return repo_root().joinpath(*default_parts).resolve()


def workspace_dir() -> Path:
    """Storage helper root (TOOLEXEC_WORKSPACE_DIR, default ``<repo>/workspace``)."""
    return _data_dir("WORKSPACE_DIR", "workspace")


def registry_dir() -> Path:
    """YAML tool registry (TOOLEXEC_REGISTRY_DIR, default ``<repo>/registry``)."""
    return _data_dir("REGISTRY_DIR", "registry")


def telemetry_dir() -> Path:
    """JSONL telemetry (TOOLEXEC_TELEMETRY_DIR, default ``<repo>/artifacts/telemetry``)."""
    return _data_dir("TELEMETRY_DIR", "artifacts", "telemetry")


def telemetry_disabled() -> bool:
    return env_flag("DISABLE_TELEMETRY")


def mcp_transport() -> str:
    return os.getenv("MCP_TRANSPORT") or "stdio"


def configure_logging() -> None:
    """
    Send logs to stderr (stdout is the MCP stdio channel).
    Does nothing when the root logger already has handlers.
    """
    if logging.getLogger().handlers:
        return

    level = logging.getLevelName((env("LOG_LEVEL", "INFO") or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format=env("LOG_FORMAT", DEFAULT_LOG_FORMAT), stream=sys.stderr)


def init_runtime(*, configure_logs: bool = True, load_env: bool = True) -> None:
    """Entry points only (gateway, scripts)."""
    if load_env:
        load_env_once()
    if configure_logs:
        configure_logging()

"""JSONL telemetry: one line per gateway tool call or wrapped capability call."""

from __future__ import annotations

import datetime as _dt
import json
from collections import deque
from pathlib import Path
from typing import Any, Dict, Optional

from toolexec_common.context import get_request_id
from toolexec_common.errors import REDACT_TOKEN
from toolexec_config.settings import telemetry_dir, telemetry_disabled

# Resolved once at import; tests patch these two attributes.
_TELEMETRY_DIR: Path = telemetry_dir()
_DISABLE_TELEMETRY: bool = telemetry_disabled()

TOOL_TELEMETRY_FILE = "mcp-telemetry.jsonl"
CAPABILITY_TELEMETRY_FILE = "capability-telemetry.jsonl"

RECENT_DEFAULT = 50
RECENT_MAX = 200

SECRET_KEYS = frozenset(
    {
        "authorization",
        "access_token",
        "token",
        "api_key",
        "apikey",
        "password",
        "secret",
        "gemini_api_key",
        "apify_token",
    }
)


def _is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and key.strip().lower() in SECRET_KEYS


def _masked(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower().startswith("bearer "):
        return "Bearer " + REDACT_TOKEN
    return REDACT_TOKEN


def redact(obj: Any) -> Any:
    """Copy of ``obj`` with every value under a secret-looking key masked, at any depth."""
    if isinstance(obj, dict):
        return {k: _masked(v) if _is_secret_key(k) else redact(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


def _utc_timestamp() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _path(telemetry_file: str) -> Path:
    return _TELEMETRY_DIR / telemetry_file


def log_event(
    kind: str,
    name: str,
    args: Optional[Dict[str, Any]] = None,
    ok: bool = True,
    ms: int = 0,
    *,
    corr_id: Optional[str] = None,
    telemetry_file: str = TOOL_TELEMETRY_FILE,
) -> None:
    """
    Append one record. ``kind`` is ``"tool"`` for gateway tools and
    ``"capability"`` for calls into wrapped servers. Raises OSError when the
    directory is not writable; callers decide whether that matters.
    """
    if _DISABLE_TELEMETRY:
        return

    rid = get_request_id()
    record = redact(
        {
            "ts": _utc_timestamp(),
            "kind": kind,
            "name": name,
            "request_id": rid,
            "corr_id": corr_id or rid,
            "args": dict(args or {}),
            "ok": bool(ok),
            "ms": int(ms),
        }
    )

    p = _path(telemetry_file)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def telemetry_recent(n: Any = RECENT_DEFAULT, telemetry_file: str = TOOL_TELEMETRY_FILE) -> dict:
    """Last ``n`` (1..200) parseable records, oldest first, redacted again on read."""
    try:
        limit = int(n)
    except (TypeError, ValueError):
        limit = RECENT_DEFAULT
    limit = max(1, min(limit, RECENT_MAX))

    p = _path(telemetry_file)
    if not p.is_file():
        return {"records": []}

    with p.open(encoding="utf-8") as f:
        tail = deque((line for line in f if line.strip()), maxlen=limit)

    records = []
    for line in tail:
        try:
            records.append(redact(json.loads(line)))
        except ValueError:
            continue
    return {"records": records}

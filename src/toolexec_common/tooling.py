from __future__ import annotations

import functools
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from toolexec_common.context import get_request_id, request_scope
from toolexec_common.errors import typed_error
from toolexec_common.telemetry import TOOL_TELEMETRY_FILE, log_event, redact

logger = logging.getLogger(__name__)


# Script bodies can be large; telemetry keeps only a prefix.
_MAX_LOGGED_STR = 500


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_LOGGED_STR:
        return value[:_MAX_LOGGED_STR] + "..."
    return value


def sanitize_args_for_log(args: dict | None) -> dict:
    """Mask secrets (any depth) and clip long top-level strings."""
    return {str(k): _clip(v) for k, v in redact(dict(args or {})).items()}


@dataclass(frozen=True)
class InstrumentConfig:
    kind: str
    name: str
    telemetry_file: str = TOOL_TELEMETRY_FILE

    # correlation id behavior
    new_corr_id_per_call: bool = True

    # attach corr_id to returned dict for debugging
    attach_corr_id: bool = True


def instrument_async_tool(cfg: InstrumentConfig):
    """Decorator for async gateway tools: corr id, timing, telemetry, typed errors."""

    def decorator(fn: Callable[..., Awaitable[Any]]):
        fn_sig = inspect.signature(fn)

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any):
            # reuse the caller's id only when asked to; capability calls made
            # inside the tool inherit whichever id is bound here
            corr_id = None if cfg.new_corr_id_per_call else get_request_id()

            with request_scope(corr_id) as corr_id:
                t0 = time.perf_counter()

                bound = fn_sig.bind_partial(*args, **kwargs)
                bound.apply_defaults()
                args_for_log: dict[str, Any] = {"args": sanitize_args_for_log(dict(bound.arguments))}

                try:
                    payload = await fn(*args, **kwargs)
                except Exception as e:
                    logger.exception("Tool %s failed", cfg.name)
                    payload = typed_error("internal", str(e))

                ms = int((time.perf_counter() - t0) * 1000)
                failed = isinstance(payload, dict) and bool(payload.get("error"))
                if failed:
                    args_for_log["error"] = payload["error"]

                try:
                    log_event(
                        cfg.kind,
                        cfg.name,
                        args_for_log,
                        ok=not failed,
                        ms=ms,
                        corr_id=corr_id,
                        telemetry_file=cfg.telemetry_file,
                    )
                except OSError:
                    logger.warning("Failed to write telemetry for %s", cfg.name, exc_info=True)

            if cfg.attach_corr_id and isinstance(payload, dict):
                payload.setdefault("corr_id", corr_id)
            return payload

        # Preserve signature for schema generation
        wrapper.__signature__ = fn_sig  # type: ignore[attr-defined]
        return wrapper

    return decorator

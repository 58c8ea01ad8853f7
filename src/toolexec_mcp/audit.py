"""Bounded, append-only record of every capability call."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, List

from toolexec_common.telemetry import CAPABILITY_TELEMETRY_FILE, log_event
from toolexec_mcp.constants import AUDIT_CAPACITY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    timestamp: float
    service: str
    capability: str
    arguments: Any
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["error"] is None:
            d.pop("error")
        return d


class CallAuditor:
    """
    Ring buffer of AuditEntry (newest last). Once capacity is exceeded the
    oldest entry is dropped. Never raises: it is a diagnostic trail, so
    whatever is passed in is stored as-is.
    """

    def __init__(self, capacity: int = AUDIT_CAPACITY, *, telemetry: bool = True) -> None:
        self._entries: Deque[Any] = deque(maxlen=capacity)
        self._telemetry = telemetry

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, entry: Any) -> None:
        self._entries.append(entry)
        if self._telemetry and isinstance(entry, AuditEntry):
            self._emit(entry)

    def recent(self, limit: int = 100) -> List[Any]:
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    @staticmethod
    def _emit(entry: AuditEntry) -> None:
        try:
            log_event(
                "capability",
                f"{entry.service}.{entry.capability}",
                {"args": entry.arguments, "error": entry.error},
                ok=entry.error is None,
                ms=entry.duration_ms,
                telemetry_file=CAPABILITY_TELEMETRY_FILE,
            )
        except Exception:
            logger.debug("Capability telemetry write failed", exc_info=True)

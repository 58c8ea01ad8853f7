"""Correlation id shared by one gateway tool call and every capability call it makes."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_request_id_ctx: ContextVar[str | None] = ContextVar("toolexec_request_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


def get_request_id() -> str:
    rid = _request_id_ctx.get()
    if not rid:
        rid = new_request_id()
        _request_id_ctx.set(rid)
    return rid


@contextmanager
def request_scope(rid: str | None = None) -> Iterator[str]:
    """
    Bind ``rid`` (or a fresh id) for the duration of the block.

    Tasks created inside the block (script tasks, connect attempts) copy the
    context, so their telemetry carries the same id even after the block exits.
    """
    rid = rid or new_request_id()
    token = _request_id_ctx.set(rid)
    try:
        yield rid
    finally:
        _request_id_ctx.reset(token)

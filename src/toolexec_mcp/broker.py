"""Connection registry + broker: lazy connect-or-reuse, idle eviction, mass teardown."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from toolexec_config.servers import ServiceDescriptor
from toolexec_mcp.audit import CallAuditor
from toolexec_mcp.connection import open_connection
from toolexec_mcp.constants import IDLE_TIMEOUT_S, SWEEP_INTERVAL_S

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """What the broker and the proxies need from a live connection."""

    @property
    def is_open(self) -> bool: ...

    def has_capability(self, capability: str) -> bool: ...

    async def call_tool(self, capability: str, arguments: Dict[str, Any] | None = None) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[ServiceDescriptor], Awaitable[Connection]]


@dataclass
class ConnectionState:
    descriptor: ServiceDescriptor
    connection: Optional[Connection] = None
    last_used_at: Optional[float] = None

    @property
    def connected(self) -> bool:
        return self.connection is not None


class ConnectionBroker:
    """
    Owns one ConnectionState per configured descriptor for its whole lifetime.

    State per descriptor: Disconnected -> Connecting -> Connected -> Disconnected.
    Concurrent ``get_connection`` calls for the same name while Connecting share
    the single pending attempt (``_pending``). Failures are reported once as
    ``None``; nothing is retried automatically.

    All mutation happens between awaits on one event loop, so the
    check-then-set on ``_pending`` needs no lock.
    """

    def __init__(
        self,
        descriptors: Iterable[ServiceDescriptor],
        *,
        connector: Connector = open_connection,
        auditor: CallAuditor | None = None,
        idle_timeout: float = IDLE_TIMEOUT_S,
        sweep_interval: float = SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._states: Dict[str, ConnectionState] = {}
        for d in descriptors:
            if d.name in self._states:
                raise ValueError(f"duplicate service name: {d.name}")
            self._states[d.name] = ConnectionState(descriptor=d)

        self._pending: Dict[str, asyncio.Task] = {}
        self._connector = connector
        self.auditor = auditor if auditor is not None else CallAuditor()
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None
        self._closed = False

    # -- registry views -----------------------------------------------------

    @property
    def descriptors(self) -> List[ServiceDescriptor]:
        return [s.descriptor for s in self._states.values()]

    def state(self, name: str) -> Optional[ConnectionState]:
        return self._states.get(name)

    def list_available(self) -> List[str]:
        return list(self._states)

    def list_connected(self) -> List[str]:
        return [name for name, s in self._states.items() if s.connection is not None]

    def is_connecting(self, name: str) -> bool:
        return name in self._pending

    # -- connect / reuse ----------------------------------------------------

    def touch(self, name: str) -> None:
        """Mark a connected service as used now (strictly later than the previous mark)."""
        state = self._states.get(name)
        if state is None or state.connection is None:
            return
        now = self._clock()
        if state.last_used_at is not None and now <= state.last_used_at:
            now = math.nextafter(state.last_used_at, math.inf)
        state.last_used_at = now

    async def get_connection(self, name: str) -> Optional[Connection]:
        state = self._states.get(name)
        if state is None:
            logger.error("Unknown service: %s", name)
            return None

        if state.connection is not None:
            if state.connection.is_open:
                self.touch(name)
                return state.connection
            logger.warning("Connection to %s is no longer open; reconnecting", name)
            await self.disconnect(name)

        pending = self._pending.get(name)
        if pending is None:
            if self._closed:
                return None
            pending = asyncio.create_task(self._connect(state), name=f"connect:{name}")
            self._pending[name] = pending
            pending.add_done_callback(lambda t, n=name: self._forget_attempt(n, t))

        # one waiter giving up must not cancel the attempt the others share
        return await asyncio.shield(pending)

    def _forget_attempt(self, name: str, task: asyncio.Task) -> None:
        if self._pending.get(name) is task:
            del self._pending[name]

    async def _connect(self, state: ConnectionState) -> Optional[Connection]:
        d = state.descriptor
        try:
            connection = await self._connector(d)
        except Exception as e:
            logger.warning("Failed to connect %s: %s", d.display_name, e)
            return None

        if self._closed:
            # shutdown raced the handshake; do not leave an orphan behind
            await self._close_quietly(d.name, connection)
            return None

        state.connection = connection
        state.last_used_at = None
        self.touch(d.name)
        logger.info("Connected: %s", d.display_name)
        return connection

    # -- teardown -----------------------------------------------------------

    async def _close_quietly(self, name: str, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Error disconnecting %s: %s", name, e)

    async def disconnect(self, name: str) -> None:
        state = self._states.get(name)
        if state is None or state.connection is None:
            return

        # detach before awaiting so no other task observes a closing handle
        connection = state.connection
        state.connection = None
        state.last_used_at = None

        await self._close_quietly(name, connection)
        logger.info("Disconnected: %s", name)

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(self.disconnect(name) for name in list(self._states)))

    async def sweep_idle(self) -> List[str]:
        """Disconnect every service unused for longer than ``idle_timeout``."""
        now = self._clock()
        idle = [
            name
            for name, s in self._states.items()
            if s.connection is not None and s.last_used_at is not None and now - s.last_used_at > self.idle_timeout
        ]
        for name in idle:
            logger.info("Idle for more than %ss: %s", self.idle_timeout, name)
            await self.disconnect(name)
        return idle

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Start the periodic idle sweep. Idempotent."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._closed = False
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="idle-sweeper")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_idle()
            except Exception:
                logger.exception("Idle sweep failed")

    async def stop_sweeper(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    async def aclose(self) -> None:
        """Ordered shutdown: no new sweeps, no new connects, then close everything at once."""
        await self.stop_sweeper()
        self._closed = True
        await self.disconnect_all()

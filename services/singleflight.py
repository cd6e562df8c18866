"""
Connection singleflight gate.

One in-flight setup attempt for a shared resource (store handle, cache
client) is shared by every concurrent caller. The manager is a plain value
injected where needed; there is no module-level connection cache.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from services.errors import SingleflightSetupError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"


class ConnectionManager(Generic[T]):
    """
    Memoized-promise gate with states {idle, connecting(pending), ready(handle)}.

    - ready: acquire() returns the cached handle immediately
    - connecting: acquire() awaits the attempt already in flight
    - idle: acquire() starts a new attempt

    A failed attempt clears the in-flight marker so the next caller retries,
    and the error reaches every waiter of that attempt.
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], Awaitable[T]],
        closer: Optional[Callable[[T], Awaitable[None]]] = None,
        timeout: Optional[float] = None,
    ):
        self.name = name
        self._factory = factory
        self._closer = closer
        self._timeout = timeout
        self._handle: Optional[T] = None
        self._pending: Optional[asyncio.Future] = None
        self.attempts = 0

    @property
    def state(self) -> ConnectionState:
        if self._handle is not None:
            return ConnectionState.READY
        if self._pending is not None:
            return ConnectionState.CONNECTING
        return ConnectionState.IDLE

    @property
    def handle(self) -> Optional[T]:
        """Non-blocking peek at the ready handle (None unless ready)."""
        return self._handle

    async def acquire(self) -> T:
        if self._handle is not None:
            return self._handle
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._connect())
        # shield: a cancelled waiter must not cancel the attempt other callers share
        return await asyncio.shield(self._pending)

    async def _connect(self) -> T:
        self.attempts += 1
        attempt = self.attempts
        start = time.monotonic()
        logger.info(f"[{self.name}] connecting (attempt {attempt})")
        try:
            if self._timeout is not None:
                handle = await asyncio.wait_for(self._factory(), timeout=self._timeout)
            else:
                handle = await self._factory()
        except Exception as e:
            self._pending = None
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.error(f"[{self.name}] setup failed (attempt {attempt}, elapsed={elapsed_ms}ms): {type(e).__name__}: {e}")
            raise SingleflightSetupError(self.name, f"{type(e).__name__}: {e}") from e

        self._handle = handle
        self._pending = None
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"[{self.name}] ready (attempt {attempt}, elapsed={elapsed_ms}ms)")
        return handle

    async def close(self) -> None:
        """Release the handle (if any) and return to idle."""
        handle, self._handle = self._handle, None
        if handle is not None and self._closer is not None:
            try:
                await self._closer(handle)
            except Exception as e:
                logger.warning(f"[{self.name}] close failed: {type(e).__name__}: {e}")
        logger.info(f"[{self.name}] closed")

    def reset(self) -> None:
        """Forget the cached handle without closing it (forces the next acquire to reconnect)."""
        self._handle = None

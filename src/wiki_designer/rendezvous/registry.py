"""
Result Rendezvous Registry

A keyed table that lets one coroutine park until a named result arrives and
lets another request deliver that result later, exactly once.

The main user is the `edit-page` tool: the tool handler waits on
``(chat_id, "edit-page")`` while the UI shows a confirmation dialog, and the
`/api/ui/result` endpoint delivers the user's decision on a separate HTTP
request, possibly minutes later.

Design choices
--------------
- One instance per process, created by the application factory and injected
  where needed (no module-level singleton).
- At most one waiter per key. A second wait on an occupied key fails fast
  with `RendezvousConflict` instead of replacing the first waiter.
- Deliveries that arrive before anyone waits are buffered for a bounded time
  (`ttl`) and swept periodically, so an early click is not lost.
- Table mutations happen under a re-entrant lock; waiters are always woken on
  the event loop that owns their future, so delivery from another thread is
  safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("designer.rendezvous")

RendezvousKey = Tuple[str, str]

DEFAULT_TASK = "default"


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class RendezvousError(RuntimeError):
    """Base class for rendezvous failures."""


class RendezvousTimeout(RendezvousError):
    """Raised when no result is delivered before the wait deadline."""


class RendezvousCancelled(RendezvousError):
    """Raised in the waiter when its pending result is cancelled."""


class RendezvousConflict(RendezvousError):
    """Raised when a key already has an outstanding waiter."""


# ---------------------------------------------------------------------
# Internal entries
# ---------------------------------------------------------------------

@dataclass
class _Waiter:
    future: asyncio.Future
    deadline: float


@dataclass
class _Buffered:
    value: Any
    expire_at: float


def _settle(future: asyncio.Future, value: Any = None, error: Optional[BaseException] = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)


def _settle_on_owner_loop(
    future: asyncio.Future,
    value: Any = None,
    error: Optional[BaseException] = None,
) -> None:
    """Settle ``future`` directly when on its loop, otherwise hop loops."""
    loop = future.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None

    if running is loop:
        _settle(future, value, error)
    else:
        loop.call_soon_threadsafe(_settle, future, value, error)


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class ResultRendezvous:
    """
    Keyed rendezvous between a waiting coroutine and a later delivery.
    """

    def __init__(
        self,
        ttl: float = 600.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Parameters
        ----------
        ttl : float
            Seconds a delivered-but-unclaimed result stays buffered.

        sweep_interval : float
            Seconds between background sweeps of expired buffered results.

        clock : Callable[[], float]
            Monotonic clock, injectable for tests.
        """
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._lock = RLock()
        self._waiters: Dict[RendezvousKey, _Waiter] = {}
        self._buffered: Dict[RendezvousKey, _Buffered] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def key(chat_id: str, task_name: Optional[str] = None) -> RendezvousKey:
        return (chat_id, task_name or DEFAULT_TASK)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def wait(
        self,
        chat_id: str,
        task_name: Optional[str] = None,
        timeout: float = 300.0,
    ) -> Any:
        """
        Wait for the result delivered under ``(chat_id, task_name)``.

        A result buffered by an earlier `deliver` is returned immediately.

        Raises
        ------
        RendezvousConflict
            If another coroutine is already waiting on the same key.

        RendezvousTimeout
            If nothing is delivered within ``timeout`` seconds.

        RendezvousCancelled
            If the wait is cancelled through `cancel` or `clear_all`.
        """
        key = self.key(chat_id, task_name)
        loop = asyncio.get_running_loop()

        with self._lock:
            buffered = self._buffered.pop(key, None)
            if buffered is not None and buffered.expire_at > self._clock():
                return buffered.value

            if key in self._waiters:
                raise RendezvousConflict(
                    f"A result for chat '{chat_id}' (task: {key[1]}) is already being awaited"
                )

            waiter = _Waiter(future=loop.create_future(), deadline=self._clock() + timeout)
            self._waiters[key] = waiter

        try:
            return await asyncio.wait_for(waiter.future, timeout)
        except asyncio.TimeoutError:
            raise RendezvousTimeout(
                f"Timeout waiting for UI result (task: {key[1]})"
            ) from None
        finally:
            with self._lock:
                if self._waiters.get(key) is waiter:
                    del self._waiters[key]

    def deliver(
        self,
        chat_id: str,
        result: Any,
        task_name: Optional[str] = None,
    ) -> bool:
        """
        Deliver ``result`` for ``(chat_id, task_name)``.

        Returns
        -------
        bool
            True if a waiter was woken, False if the result was buffered.
        """
        key = self.key(chat_id, task_name)

        with self._lock:
            waiter = self._waiters.pop(key, None)
            if waiter is None or waiter.future.done():
                self._buffered[key] = _Buffered(value=result, expire_at=self._clock() + self._ttl)
                logger.warning(
                    "No pending result for chat %s (task: %s); buffered for %.0fs",
                    key[0],
                    key[1],
                    self._ttl,
                )
                return False

        _settle_on_owner_loop(waiter.future, value=result)
        return True

    def cancel(self, chat_id: str, task_name: Optional[str] = None) -> bool:
        """
        Reject the outstanding waiter for a key and drop any buffered result.

        Returns
        -------
        bool
            True if a waiter was cancelled.
        """
        key = self.key(chat_id, task_name)

        with self._lock:
            self._buffered.pop(key, None)
            waiter = self._waiters.pop(key, None)

        if waiter is None:
            return False

        _settle_on_owner_loop(
            waiter.future,
            error=RendezvousCancelled(f"Result request cancelled (task: {key[1]})"),
        )
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop expired buffered results. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, stored in self._buffered.items() if stored.expire_at <= now]
            for k in expired:
                del self._buffered[k]
        return len(expired)

    def clear_all(self) -> None:
        """Cancel every waiter and forget every buffered result."""
        with self._lock:
            waiters = list(self._waiters.values())
            self._waiters.clear()
            self._buffered.clear()

        for waiter in waiters:
            _settle_on_owner_loop(waiter.future, error=RendezvousCancelled("All results cleared"))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._waiters)

    def buffered_count(self) -> int:
        with self._lock:
            return len(self._buffered)

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweep on the running loop (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.info("Swept %d expired UI results", removed)

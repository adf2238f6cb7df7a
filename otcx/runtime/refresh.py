"""
otcx/runtime/refresh.py

Scheduled, cancellable refresh.

Each cycle gets its own CancellationToken. A newer request cancels the
older cycle's token; a cancelled cycle never reaches on_result, so a
slow stale read can never overwrite fresher state.

The scheduler creates its events on first use, inside the loop that runs
it, so it may be constructed before asyncio.run() starts that loop.

Cycle outcomes:
    completed   fetch returned and the token was still live -> on_result
    cancelled   token cancelled (request_refresh / stop)    -> dropped
    failed      fetch raised                                -> logged, schedule continues
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from otcx.core.exceptions import RefreshCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal for a single refresh."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RefreshCancelled("refresh cancelled", {"reason": self.reason})

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled}, reason={self.reason!r})"


@dataclass
class SchedulerStats:
    completed: int = 0
    cancelled: int = 0
    failed:    int = 0


class RefreshScheduler:
    """
    Runs `fetch(token)` every `interval` seconds and hands live results
    to `on_result`. on_result may be a plain function or a coroutine
    function.
    """

    def __init__(
        self,
        fetch:     Callable[[CancellationToken], Awaitable[Any]],
        on_result: Callable[[Any], Any],
        interval:  float,
        name:      str = "refresh",
    ):
        if interval <= 0:
            raise ValueError("refresh interval must be positive")
        self.fetch = fetch
        self.on_result = on_result
        self.interval = interval
        self.name = name
        self.stats = SchedulerStats()

        self._token: Optional[CancellationToken] = None
        self._wake: Optional[asyncio.Event] = None
        self._stopping: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # ── Control ───────────────────────────────────────────────

    def _events(self) -> None:
        if self._wake is None:
            self._wake = asyncio.Event()
            self._stopping = asyncio.Event()

    def start(self) -> asyncio.Task:
        """Run the schedule in a background task until stop()."""
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def request_refresh(self) -> None:
        """Abandon the in-flight cycle (if any) and start a new one now."""
        self._events()
        if self._token is not None:
            self._token.cancel("superseded")
        self._wake.set()

    async def stop(self) -> None:
        """Cancel the in-flight cycle and wait for the schedule to exit."""
        self._events()
        self._stopping.set()
        if self._token is not None:
            self._token.cancel("stopped")
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None

    # ── Loop ──────────────────────────────────────────────────

    async def run(self, cycles: Optional[int] = None) -> SchedulerStats:
        """
        Run cycles until stopped, or until `cycles` cycles have finished
        (whatever their outcome).
        """
        self._events()
        finished = 0
        while not self._stopping.is_set():
            await self.run_once()
            finished += 1
            if cycles is not None and finished >= cycles:
                break
            if self._wake.is_set() or self._stopping.is_set():
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        return self.stats

    async def run_once(self) -> bool:
        """Run a single cycle. True iff on_result was called."""
        self._events()
        token = CancellationToken()
        self._token = token
        self._wake.clear()

        try:
            result = await self.fetch(token)
        except RefreshCancelled:
            self.stats.cancelled += 1
            logger.debug("%s cycle cancelled (%s)", self.name, token.reason)
            return False
        except Exception:
            self.stats.failed += 1
            logger.exception("%s cycle failed", self.name)
            return False
        finally:
            if self._token is token:
                self._token = None

        if token.cancelled:
            self.stats.cancelled += 1
            logger.debug("%s cycle result dropped (%s)", self.name, token.reason)
            return False

        outcome = self.on_result(result)
        if inspect.isawaitable(outcome):
            await outcome
        self.stats.completed += 1
        return True

"""Cooperative cancellation shared by the orchestrator, stage runner and poller."""

import asyncio
from typing import Optional

from config.retry_policies import Cancelled


class CancellationToken:
    """Caller-owned cancellation signal for one batch run.

    Checked at every item boundary and every poll attempt. ``wait`` lets the
    poller's inter-attempt delay end early when cancellation is requested.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Batch cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason)

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; return True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


async def interruptible_sleep(seconds: float, cancellation: CancellationToken) -> None:
    """Default poller sleeper: a timer-based wait that cancellation cuts short."""
    await cancellation.wait(seconds)

"""Cancellation token shared by an orchestrator and its workers."""

import asyncio


class ScrapeControl:
    """Pause is cooperative and checked between work units; stop is final.

    ``wait_if_paused`` blocks while paused and returns as soon as the
    session is resumed or stopped, so stopping always releases waiters.
    """

    def __init__(self):
        self._running = asyncio.Event()
        self._running.set()
        self._stopped = False

    @property
    def paused(self) -> bool:
        return not self._running.is_set() and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        if not self._stopped:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def stop(self) -> None:
        self._stopped = True
        self._running.set()

    async def wait_if_paused(self) -> bool:
        """Block while paused.

        Returns:
            False if the session was stopped, True otherwise
        """
        await self._running.wait()
        return not self._stopped

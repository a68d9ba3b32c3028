"""Cooperative cancellation shared by every operation of a run."""

import asyncio

from .exceptions import RunAborted


class CancelToken:
    """Shared cancellation signal.

    Long waits go through ``sleep`` so they unwind as soon as the run is
    cancelled instead of finishing their full interval.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "abort requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self) -> None:
        """Raise RunAborted if the run was cancelled."""
        if self._event.is_set():
            raise RunAborted(f"Run aborted: {self.reason}")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            RunAborted: If the token is cancelled before or during the sleep
        """
        self.check()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.check()

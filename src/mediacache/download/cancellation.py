"""
Cooperative cancellation for downloads and preload batches.
"""

from __future__ import annotations

import asyncio


class CancellationToken:
    """A one-shot cancellation signal.

    Child tokens are cancelled together with their parent, so cancelling a
    batch reaches whichever download is active, while cancelling a child
    leaves the parent and its siblings alone.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)
        self._children.clear()

    def child(self) -> CancellationToken:
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.append(token)
        return token

    def forget(self, child: CancellationToken) -> None:
        """Stop propagating to a child that has finished its work."""
        if child in self._children:
            self._children.remove(child)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True if cancelled."""
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

"""Cooperative cancellation for a conversation in flight."""

from __future__ import annotations

import asyncio

from ..errors import TurnCancelledError


class CancellationToken:
    """Flag a caller sets to abort a stuck conversation.

    The orchestration loop checks the token before every backend call and
    every tool dispatch, and passes it to the dispatcher so long-running
    tools can bail out too.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(self.reason or "Conversation cancelled by caller")


__all__ = ["CancellationToken"]

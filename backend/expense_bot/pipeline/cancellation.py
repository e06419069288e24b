"""Cooperative cancellation.

Work that has been abandoned (a phase that missed its deadline) keeps running
until its next checkpoint, where it raises :class:`Aborted` and unwinds
without touching shared state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..errors import Aborted

T = TypeVar("T")


class CancellationSignal:
    def __init__(self, parent: CancellationSignal | None = None) -> None:
        self.parent = parent
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent is not None and self.parent.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        signal: CancellationSignal | None = self
        while signal is not None:
            if signal._event.is_set():
                raise Aborted(signal.reason or "cancelled")
            signal = signal.parent

    async def wait(self) -> None:
        """Block until this signal or one of its parents is cancelled."""
        events = []
        signal: CancellationSignal | None = self
        while signal is not None:
            events.append(signal._event)
            signal = signal.parent
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()


async def guarded(
    signal: CancellationSignal | None,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)`` with a checkpoint on each side."""
    if signal is not None:
        signal.raise_if_cancelled()
    result = await func(*args, **kwargs)
    if signal is not None:
        signal.raise_if_cancelled()
    return result

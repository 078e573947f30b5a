"""Cancellation handle and deadline guard for suspendable pipeline calls."""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from .errors import Cancelled, Timeout

T = TypeVar("T")


class CancelToken:
    """User-initiated cancellation shared by every call of one operation."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason)

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None, operation: str = "operation") -> T:
        """Await ``awaitable`` until it finishes, the token fires, or ``timeout`` elapses.

        The guarded call is cancelled in the latter two cases and ``Cancelled`` or
        ``Timeout`` is raised in its place.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise Cancelled(self.reason)
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work in done:
            return work.result()
        if self._event.is_set():
            raise Cancelled(self.reason)
        raise Timeout(operation, timeout or 0)


async def guarded(
    awaitable: Awaitable[T],
    cancel: CancelToken | None,
    timeout: float | None,
    operation: str,
) -> T:
    token = cancel or CancelToken()
    return await token.guard(awaitable, timeout=timeout, operation=operation)


__all__ = ["CancelToken", "guarded"]

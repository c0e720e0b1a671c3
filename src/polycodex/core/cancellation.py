"""Cooperative cancellation primitive shared by the turn loop and tool executor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortedError(Exception):
    """Raised by `AbortSignal.race` when the signal fires first."""


class AbortSignal:
    """One-shot abort flag that coroutines can await or race against."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the signal fires first.

        The losing task is cancelled; `AbortedError` is raised on abort.
        """

        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortedError(self.reason)
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring failure from aborted task: %s", exc)
        raise AbortedError(self.reason)


__all__ = ["AbortSignal", "AbortedError"]

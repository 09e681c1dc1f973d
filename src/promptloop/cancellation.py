import asyncio
from typing import Awaitable, TypeVar

from .errors import OperationAborted

_T = TypeVar("_T")


class CancellationToken:
    """One token per run, passed by reference through every call boundary.

    Once cancelled a token stays cancelled; a new run gets a new token.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise OperationAborted()

    async def guard(self, awaitable: Awaitable[_T]) -> _T:
        """Await ``awaitable`` unless the token fires first.

        The pending call is cancelled and ``OperationAborted`` raised as soon
        as the token is triggered.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationAborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task not in done:
            task.cancel()
            raise OperationAborted()
        return task.result()


async def guarded(token: CancellationToken | None, awaitable: Awaitable[_T]) -> _T:
    if token is None:
        return await awaitable
    return await token.guard(awaitable)

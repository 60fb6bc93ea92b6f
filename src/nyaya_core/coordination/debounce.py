from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class DebouncedFunction(Generic[T]):
    """Collapse a burst of calls into one deferred call of ``fn``.

    The first call arms a single timer and creates the shared future; every
    call made while the timer is armed gets that same future. When the timer
    fires, ``fn`` runs once with the arguments of the call that armed it.
    """

    def __init__(self, fn: Callable[..., Awaitable[T]], delay_ms: int) -> None:
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        self.fn = fn
        self.delay_ms = delay_ms
        self._future: asyncio.Future[T] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._args: tuple[Any, ...] = ()
        self._kwargs: dict[str, Any] = {}
        self._running: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> bool:
        return self._future is not None

    def __call__(self, *args: Any, **kwargs: Any) -> asyncio.Future[T]:
        if self._future is not None:
            return self._future

        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._args = args
        self._kwargs = kwargs
        self._timer = loop.call_later(self.delay_ms / 1000, self._fire)
        return self._future

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        future = self._reset()
        if future is not None and not future.done():
            future.cancel()

    def _fire(self) -> None:
        future = self._future
        args, kwargs = self._args, self._kwargs
        if future is None:
            return
        task = asyncio.get_running_loop().create_task(self._invoke(future, args, kwargs))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _invoke(
        self,
        future: asyncio.Future[T],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        try:
            result = await self.fn(*args, **kwargs)
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            if self._future is future:
                self._reset()

    def _reset(self) -> asyncio.Future[T] | None:
        future = self._future
        self._future = None
        self._timer = None
        self._args = ()
        self._kwargs = {}
        return future


def debounce_async(
    fn: Callable[..., Awaitable[T]],
    delay_ms: int,
) -> DebouncedFunction[T]:
    return DebouncedFunction(fn, delay_ms)

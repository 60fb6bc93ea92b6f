from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Generic, TypeVar

from nyaya_core.config import BatcherConfig
from nyaya_core.errors import MissingBatchResultError

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")

BatchFn = Callable[[list[InputT]], Awaitable[Sequence[OutputT]]]


class RequestBatcher(Generic[InputT, OutputT]):
    """Aggregate ``add`` calls into batches for a single ``batch_fn`` call.

    A batch is dispatched when ``window_ms`` has passed since its first item
    or as soon as it holds ``max_batch_size`` items, whichever comes first.
    ``outputs[i]`` resolves the i-th caller of the batch.
    """

    def __init__(
        self,
        batch_fn: BatchFn[InputT, OutputT],
        *,
        window_ms: int = 50,
        max_batch_size: int = 10,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.batch_fn = batch_fn
        self.window_ms = window_ms
        self.max_batch_size = max_batch_size
        self._queue: list[tuple[InputT, asyncio.Future[OutputT]]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls,
        batch_fn: BatchFn[InputT, OutputT],
        config: BatcherConfig,
    ) -> RequestBatcher[InputT, OutputT]:
        return cls(batch_fn, window_ms=config.window_ms, max_batch_size=config.max_batch_size)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def add(self, item: InputT) -> asyncio.Future[OutputT]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[OutputT] = loop.create_future()
        self._queue.append((item, future))

        if len(self._queue) >= self.max_batch_size:
            self._dispatch()
        elif self._timer is None:
            self._timer = loop.call_later(self.window_ms / 1000, self._dispatch)
        return future

    async def flush(self) -> None:
        self._dispatch()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    async def close(self) -> None:
        await self.flush()

    def _dispatch(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        batch, self._queue = self._queue, []
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._run_batch(batch))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run_batch(self, batch: list[tuple[InputT, asyncio.Future[OutputT]]]) -> None:
        inputs = [item for item, _ in batch]
        try:
            outputs = list(await self.batch_fn(inputs))
        except Exception as exc:
            logger.warning("batch failed size=%s: %s", len(batch), exc)
            for _, future in batch:
                if not future.done():
                    future.set_exception(exc)
            return

        if len(outputs) < len(batch):
            logger.warning("batch returned %s results for %s inputs", len(outputs), len(batch))
        for index, (_, future) in enumerate(batch):
            if future.done():
                continue
            if index < len(outputs):
                future.set_result(outputs[index])
            else:
                future.set_exception(
                    MissingBatchResultError(f"missing result for batch item {index}")
                )

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from nyaya_core.config import AdaptiveBatchConfig
from nyaya_core.schemas import AdaptiveBatchState, BatchMetrics, ProcessingStatus

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")

ItemFn = Callable[[InputT], Awaitable[OutputT]]
ProgressCallback = Callable[[ProcessingStatus], None]
BatchCompleteCallback = Callable[[list[OutputT], int], None]

RESPONSE_TIME_HISTORY = 10
DEFAULT_ITEM_ESTIMATE_MS = 3_000.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


async def _sleep_seconds(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(slots=True)
class BatchFailure(Generic[InputT]):
    item: InputT
    error: Exception
    retry_count: int


@dataclass(slots=True)
class BatchResult(Generic[InputT, OutputT]):
    successful: list[OutputT]
    failed: list[BatchFailure[InputT]]
    metrics: BatchMetrics


@dataclass(slots=True)
class _QueuedItem(Generic[InputT]):
    item: InputT
    retry_count: int = 0


@dataclass(slots=True)
class _Tally(Generic[InputT, OutputT]):
    successful: list[OutputT] = field(default_factory=list)
    failed: list[BatchFailure[InputT]] = field(default_factory=list)
    retries_used: int = 0
    processed: int = 0


class AdaptiveBatchProcessor(Generic[InputT, OutputT]):
    """Run an item function over many inputs in batches whose size adapts.

    Any failure in a batch halves the batch size (never below the minimum).
    After ``success_threshold`` consecutive successes, and while the average
    per-item time stays under ``target_response_ms``, the size grows by one up
    to the maximum. Failed items are queued again with exponential backoff
    until ``max_retries`` is used up.
    """

    def __init__(
        self,
        config: AdaptiveBatchConfig | None = None,
        *,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = _sleep_seconds,
    ) -> None:
        self.config = config or AdaptiveBatchConfig()
        self._clock = clock
        self._sleep = sleep
        self._batch_size = self.config.initial_batch_size
        self._consecutive_successes = 0
        self._consecutive_failures = 0
        self._response_times: deque[float] = deque(maxlen=RESPONSE_TIME_HISTORY)

    @property
    def current_batch_size(self) -> int:
        return self._batch_size

    async def process(
        self,
        items: list[InputT],
        fn: ItemFn[InputT, OutputT],
        *,
        on_progress: ProgressCallback | None = None,
        on_batch_complete: BatchCompleteCallback[OutputT] | None = None,
    ) -> BatchResult[InputT, OutputT]:
        started = self._clock()
        queue: deque[_QueuedItem[InputT]] = deque(_QueuedItem(item) for item in items)
        tally: _Tally[InputT, OutputT] = _Tally()
        batch_number = 0

        while queue:
            batch = [queue.popleft() for _ in range(min(self._batch_size, len(queue)))]
            batch_number += 1
            if on_progress is not None:
                remaining = len(queue) + len(batch)
                on_progress(self._status(tally, total=len(items), remaining=remaining))

            batch_started = self._clock()
            outcomes = await asyncio.gather(
                *(fn(entry.item) for entry in batch),
                return_exceptions=True,
            )
            self._response_times.append((self._clock() - batch_started) / len(batch))

            batch_successes: list[OutputT] = []
            had_failures = False
            for entry, outcome in zip(batch, outcomes):
                tally.processed += 1
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    had_failures = True
                    await self._handle_failure(entry, outcome, queue, tally)
                    continue
                tally.successful.append(outcome)
                batch_successes.append(outcome)
                self._consecutive_successes += 1
                self._consecutive_failures = 0

            if on_batch_complete is not None and batch_successes:
                on_batch_complete(batch_successes, batch_number)

            self._adjust_batch_size(had_failures)
            if queue:
                await self._sleep(self.config.inter_batch_delay_ms / 1000)

        total_time_ms = self._clock() - started
        metrics = BatchMetrics(
            total_items=len(items),
            success_count=len(tally.successful),
            failure_count=len(tally.failed),
            total_time_ms=total_time_ms,
            avg_time_per_item_ms=total_time_ms / len(items) if items else 0.0,
            final_batch_size=self._batch_size,
            retries_used=tally.retries_used,
        )
        logger.info(
            "adaptive batch done items=%s ok=%s failed=%s retries=%s batch_size=%s",
            metrics.total_items,
            metrics.success_count,
            metrics.failure_count,
            metrics.retries_used,
            metrics.final_batch_size,
        )
        return BatchResult(successful=tally.successful, failed=tally.failed, metrics=metrics)

    def get_metrics(self) -> AdaptiveBatchState:
        return AdaptiveBatchState(
            current_batch_size=self._batch_size,
            consecutive_successes=self._consecutive_successes,
            consecutive_failures=self._consecutive_failures,
            avg_response_time_ms=self._average_response_time(),
        )

    def reset(self) -> None:
        self._batch_size = self.config.initial_batch_size
        self._consecutive_successes = 0
        self._consecutive_failures = 0
        self._response_times.clear()

    async def _handle_failure(
        self,
        entry: _QueuedItem[InputT],
        error: Exception,
        queue: deque[_QueuedItem[InputT]],
        tally: _Tally[InputT, OutputT],
    ) -> None:
        self._consecutive_failures += 1
        self._consecutive_successes = 0
        if entry.retry_count >= self.config.max_retries:
            logger.warning(
                "adaptive batch item failed after retries=%s: %s", entry.retry_count, error
            )
            tally.failed.append(
                BatchFailure(item=entry.item, error=error, retry_count=entry.retry_count)
            )
            return

        delay_ms = self.config.retry_base_delay_ms * (
            self.config.backoff_multiplier**entry.retry_count
        )
        await self._sleep(delay_ms / 1000)
        queue.append(_QueuedItem(entry.item, entry.retry_count + 1))
        tally.retries_used += 1

    def _adjust_batch_size(self, had_failures: bool) -> None:
        if had_failures:
            self._batch_size = max(self.config.min_batch_size, self._batch_size // 2)
            self._consecutive_successes = 0
            return
        if self._consecutive_successes < self.config.success_threshold:
            return
        if self._average_response_time() < self.config.target_response_ms:
            self._batch_size = min(self.config.max_batch_size, self._batch_size + 1)
            self._consecutive_successes = 0

    def _average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def _status(
        self,
        tally: _Tally[InputT, OutputT],
        *,
        total: int,
        remaining: int,
    ) -> ProcessingStatus:
        average = self._average_response_time()
        per_item = average if average > 0 else DEFAULT_ITEM_ESTIMATE_MS
        return ProcessingStatus(
            current_item=tally.processed + 1,
            total_items=total,
            current_batch_size=self._batch_size,
            estimated_time_remaining_ms=remaining * per_item,
            failed_count=len(tally.failed),
            success_count=len(tally.successful),
        )


async def process_with_adaptive_batching(
    items: list[InputT],
    fn: ItemFn[InputT, OutputT],
    config: AdaptiveBatchConfig | None = None,
    *,
    on_progress: ProgressCallback | None = None,
    on_batch_complete: BatchCompleteCallback[OutputT] | None = None,
) -> BatchResult[InputT, OutputT]:
    processor: AdaptiveBatchProcessor[InputT, OutputT] = AdaptiveBatchProcessor(config)
    return await processor.process(
        items,
        fn,
        on_progress=on_progress,
        on_batch_complete=on_batch_complete,
    )

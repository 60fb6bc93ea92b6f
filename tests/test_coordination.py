from __future__ import annotations

import asyncio

import pytest

from nyaya_core.config import AdaptiveBatchConfig, BatcherConfig, CoordinatorConfig
from nyaya_core.coordination import (
    AdaptiveBatchProcessor,
    RequestBatcher,
    RequestCoordinator,
    debounce_async,
    with_deduplication,
)
from nyaya_core.errors import MissingBatchResultError


class _CountingOperation:
    def __init__(self, result: object = "ok", *, delay: float = 0.01) -> None:
        self.result = result
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_execution() -> None:
    operation = _CountingOperation("analysis")
    async with RequestCoordinator(debounce_interval_ms=50) as coordinator:
        futures = [coordinator.execute("doc-1", operation) for _ in range(5)]
        stats = coordinator.stats()

        results = await asyncio.gather(*futures)

    assert results == ["analysis"] * 5
    assert operation.calls == 1
    assert stats.pending_count == 1
    assert stats.total_subscribers == 5


@pytest.mark.asyncio
async def test_failure_is_shared_by_every_subscriber() -> None:
    operation = _CountingOperation(RuntimeError("quota exhausted"))
    async with RequestCoordinator() as coordinator:
        futures = [coordinator.execute("doc-1", operation) for _ in range(3)]

        results = await asyncio.gather(*futures, return_exceptions=True)

    assert operation.calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert len({id(result) for result in results}) == 1


@pytest.mark.asyncio
async def test_settled_request_is_reused_until_debounce_elapses() -> None:
    operation = _CountingOperation()
    async with RequestCoordinator(debounce_interval_ms=30) as coordinator:
        assert await coordinator.execute("k", operation) == "ok"
        assert coordinator.is_pending("k") is True
        assert await coordinator.execute("k", operation) == "ok"
        assert operation.calls == 1

        await asyncio.sleep(0.1)
        assert coordinator.is_pending("k") is False

        assert await coordinator.execute("k", operation) == "ok"
        assert operation.calls == 2


@pytest.mark.asyncio
async def test_stale_pending_request_is_replaced() -> None:
    clock = {"now": 0}
    release = asyncio.Event()
    calls = 0

    async def slow() -> int:
        nonlocal calls
        calls += 1
        await release.wait()
        return calls

    async with RequestCoordinator(
        max_pending_age_ms=1_000,
        debounce_interval_ms=0,
        clock=lambda: clock["now"],
    ) as coordinator:
        first = coordinator.execute("k", slow)
        clock["now"] = 999
        assert coordinator.is_pending("k") is True

        clock["now"] = 1_000
        assert coordinator.is_pending("k") is False
        second = coordinator.execute("k", slow)

        release.set()
        assert await first == 2
        assert await second == 2
        assert calls == 2


@pytest.mark.asyncio
async def test_sweep_drops_only_entries_older_than_max_age() -> None:
    clock = {"now": 0}
    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "done"

    async with RequestCoordinator(
        max_pending_age_ms=100,
        clock=lambda: clock["now"],
    ) as coordinator:
        old = coordinator.execute("old", slow)
        clock["now"] = 60
        young = coordinator.execute("young", slow)

        clock["now"] = 100
        assert coordinator.sweep() == 0
        clock["now"] = 101
        assert coordinator.sweep() == 1
        assert coordinator.stats().pending_count == 1
        assert coordinator.stats().oldest_request_age_ms == 41

        release.set()
        assert await asyncio.gather(old, young) == ["done", "done"]


@pytest.mark.asyncio
async def test_cancelling_one_caller_keeps_shared_work_running() -> None:
    operation = _CountingOperation(delay=0.02)
    async with RequestCoordinator() as coordinator:
        first = coordinator.execute("k", operation)
        second = coordinator.execute("k", operation)
        first.cancel()

        assert await second == "ok"
        assert first.cancelled()
        assert operation.calls == 1


@pytest.mark.asyncio
async def test_force_new_and_clear() -> None:
    operation = _CountingOperation()
    async with RequestCoordinator() as coordinator:
        await asyncio.gather(
            coordinator.execute("k", operation),
            coordinator.execute("k", operation, force_new=True),
        )
        assert operation.calls == 2

        coordinator.clear()
        assert coordinator.stats().pending_count == 0


@pytest.mark.asyncio
async def test_with_deduplication_keys_by_arguments() -> None:
    coordinator = RequestCoordinator.from_config(CoordinatorConfig(debounce_interval_ms=0))
    calls: list[str] = []

    @with_deduplication(coordinator, "analyze")
    async def analyze(document_id: str, *, role: str) -> str:
        calls.append(document_id)
        await asyncio.sleep(0.01)
        return f"{document_id}:{role}"

    results = await asyncio.gather(
        analyze("doc-1", role="judge"),
        analyze("doc-1", role="judge"),
        analyze("doc-2", role="judge"),
    )
    await coordinator.close()

    assert results == ["doc-1:judge", "doc-1:judge", "doc-2:judge"]
    assert calls == ["doc-1", "doc-2"]


@pytest.mark.asyncio
async def test_debounce_collapses_burst_into_one_call() -> None:
    calls: list[int] = []

    async def save(value: int) -> int:
        calls.append(value)
        return value * 2

    debounced = debounce_async(save, 20)
    first = debounced(1)
    second = debounced(2)

    assert first is second
    assert debounced.pending is True
    assert await first == 2
    assert calls == [1]
    assert debounced.pending is False

    assert await debounced(5) == 10
    assert calls == [1, 5]


@pytest.mark.asyncio
async def test_debounce_cancel_drops_pending_call() -> None:
    calls: list[int] = []

    async def save(value: int) -> int:
        calls.append(value)
        return value

    debounced = debounce_async(save, 20)
    future = debounced(1)
    debounced.cancel()
    await asyncio.sleep(0.05)

    assert future.cancelled()
    assert calls == []


@pytest.mark.asyncio
async def test_batcher_splits_at_max_batch_size() -> None:
    batches: list[list[int]] = []

    async def batch_fn(items: list[int]) -> list[int]:
        batches.append(list(items))
        return [item * 10 for item in items]

    batcher = RequestBatcher(batch_fn, window_ms=20, max_batch_size=10)
    futures = [batcher.add(item) for item in range(12)]
    assert batcher.pending_count == 2

    results = await asyncio.gather(*futures)

    assert results == [item * 10 for item in range(12)]
    assert batches == [list(range(10)), [10, 11]]


@pytest.mark.asyncio
async def test_batcher_reports_missing_results() -> None:
    async def batch_fn(items: list[str]) -> list[str]:
        return [items[0].upper()]

    batcher = RequestBatcher(batch_fn, window_ms=5)
    first = batcher.add("a")
    second = batcher.add("b")

    assert await first == "A"
    with pytest.raises(MissingBatchResultError):
        await second


@pytest.mark.asyncio
async def test_batcher_failure_rejects_whole_batch() -> None:
    async def batch_fn(items: list[str]) -> list[str]:
        raise RuntimeError("upstream down")

    batcher = RequestBatcher(batch_fn, window_ms=5)
    futures = [batcher.add("a"), batcher.add("b")]

    results = await asyncio.gather(*futures, return_exceptions=True)

    assert all(isinstance(result, RuntimeError) for result in results)


@pytest.mark.asyncio
async def test_batcher_flush_dispatches_without_waiting_for_window() -> None:
    async def batch_fn(items: list[int]) -> list[int]:
        return items

    batcher = RequestBatcher.from_config(
        batch_fn,
        BatcherConfig(window_ms=60_000, max_batch_size=10),
    )
    future = batcher.add(7)

    await batcher.close()

    assert future.done()
    assert future.result() == 7
    assert batcher.pending_count == 0


def test_batcher_rejects_invalid_settings() -> None:
    async def batch_fn(items: list[int]) -> list[int]:
        return items

    with pytest.raises(ValueError):
        RequestBatcher(batch_fn, window_ms=0)
    with pytest.raises(ValueError):
        RequestBatcher(batch_fn, max_batch_size=0)


class _RecordedSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.mark.asyncio
async def test_adaptive_batch_size_halves_after_a_failing_batch() -> None:
    config = AdaptiveBatchConfig(
        initial_batch_size=4,
        max_batch_size=4,
        max_retries=0,
        success_threshold=10,
    )
    processor = AdaptiveBatchProcessor(config, sleep=_RecordedSleep())
    sizes: list[int] = []

    async def summarize(item: int) -> int:
        if item == 0:
            raise RuntimeError("rate limited")
        return item * 2

    result = await processor.process(
        list(range(8)),
        summarize,
        on_progress=lambda status: sizes.append(status.current_batch_size),
    )

    assert sizes == [4, 2, 2]
    assert result.metrics.final_batch_size == 2
    assert result.successful == [2, 4, 6, 8, 10, 12, 14]
    assert [failure.item for failure in result.failed] == [0]
    assert result.metrics.retries_used == 0


@pytest.mark.asyncio
async def test_adaptive_batch_size_grows_after_fast_successes() -> None:
    config = AdaptiveBatchConfig(
        initial_batch_size=1,
        min_batch_size=1,
        max_batch_size=3,
        success_threshold=2,
        target_response_ms=1_000,
    )
    processor = AdaptiveBatchProcessor(config, clock=lambda: 0.0, sleep=_RecordedSleep())
    sizes: list[int] = []
    completed: list[tuple[list[str], int]] = []

    async def echo(item: str) -> str:
        return item.upper()

    result = await processor.process(
        list("abcdef"),
        echo,
        on_progress=lambda status: sizes.append(status.current_batch_size),
        on_batch_complete=lambda outputs, number: completed.append((outputs, number)),
    )

    assert sizes == [1, 1, 2, 3]
    assert result.successful == list("ABCDEF")
    assert result.metrics.final_batch_size == 3
    assert completed[-1] == (["E", "F"], 4)

    processor.reset()
    assert processor.get_metrics().current_batch_size == 1
    assert processor.get_metrics().avg_response_time_ms == 0.0


@pytest.mark.asyncio
async def test_adaptive_batch_does_not_grow_when_responses_are_slow() -> None:
    clock = {"now": 0.0}
    config = AdaptiveBatchConfig(
        initial_batch_size=1,
        max_batch_size=3,
        success_threshold=1,
        target_response_ms=100,
    )
    processor = AdaptiveBatchProcessor(
        config,
        clock=lambda: clock["now"],
        sleep=_RecordedSleep(),
    )

    async def slow(item: int) -> int:
        clock["now"] += 500
        return item

    result = await processor.process([1, 2, 3], slow)

    assert result.metrics.final_batch_size == 1
    assert processor.get_metrics().avg_response_time_ms == 500


@pytest.mark.asyncio
async def test_adaptive_batch_retries_with_backoff_until_limit() -> None:
    attempts: dict[str, int] = {"flaky": 0, "broken": 0}
    sleep = _RecordedSleep()
    config = AdaptiveBatchConfig(
        initial_batch_size=2,
        max_batch_size=2,
        max_retries=2,
        retry_base_delay_ms=1_000,
        backoff_multiplier=2.0,
    )
    processor = AdaptiveBatchProcessor(config, sleep=sleep)
    completed: list[tuple[list[str], int]] = []

    async def call(item: str) -> str:
        attempts[item] += 1
        if item == "broken" or attempts[item] < 3:
            raise RuntimeError(f"{item} failed")
        return item.upper()

    result = await processor.process(
        ["flaky", "broken"],
        call,
        on_batch_complete=lambda outputs, number: completed.append((outputs, number)),
    )

    assert result.successful == ["FLAKY"]
    assert [(f.item, f.retry_count) for f in result.failed] == [("broken", 2)]
    assert str(result.failed[0].error) == "broken failed"
    assert attempts == {"flaky": 3, "broken": 3}
    assert result.metrics.retries_used == 4
    assert [delay for delay in sleep.delays if delay >= 1] == [1.0, 1.0, 2.0, 2.0]
    assert completed == [(["FLAKY"], 4)]
    assert processor.get_metrics().consecutive_failures == 1

"""Collapse concurrent identical operations into one in-flight task.

A pending entry is joinable for ``max_pending_age_ms``. Dropping an entry
(after settlement plus ``debounce_interval_ms``, or by the stale sweep) only
stops new callers from joining; the underlying task always runs to completion
and still settles for everyone already awaiting it.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, ParamSpec, TypeVar

from nyaya_core.config import CoordinatorConfig
from nyaya_core.hashing import request_fingerprint
from nyaya_core.schemas import CoordinatorStats, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

DEFAULT_MAX_PENDING_AGE_MS = 30_000
DEFAULT_DEBOUNCE_INTERVAL_MS = 100


@dataclass(slots=True)
class PendingRequest(Generic[T]):
    task: asyncio.Future[T]
    created_at: int
    subscriber_count: int = 1


class RequestCoordinator:
    def __init__(
        self,
        *,
        max_pending_age_ms: int = DEFAULT_MAX_PENDING_AGE_MS,
        debounce_interval_ms: int = DEFAULT_DEBOUNCE_INTERVAL_MS,
        enable_logging: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_pending_age_ms <= 0:
            raise ValueError("max_pending_age_ms must be > 0")
        if debounce_interval_ms < 0:
            raise ValueError("debounce_interval_ms must be >= 0")
        self.max_pending_age_ms = max_pending_age_ms
        self.debounce_interval_ms = debounce_interval_ms
        self.enable_logging = enable_logging
        self.clock = clock
        self._pending: dict[str, PendingRequest[Any]] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def from_config(cls, config: CoordinatorConfig) -> RequestCoordinator:
        return cls(
            max_pending_age_ms=config.max_pending_age_ms,
            debounce_interval_ms=config.debounce_interval_ms,
            enable_logging=config.enable_logging,
        )

    async def __aenter__(self) -> RequestCoordinator:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @staticmethod
    def fingerprint(params: Any) -> str:
        return request_fingerprint(params)

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("request coordinator is closed")
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        self._closed = True
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()

    def execute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        force_new: bool = False,
    ) -> asyncio.Future[T]:
        """Run ``fn`` once per ``key`` and hand every concurrent caller the same outcome.

        Must be called with a running event loop. Each caller gets a shielded
        view of the shared task, so cancelling one caller does not cancel the
        work for the others.
        """
        if self._closed:
            raise RuntimeError("request coordinator is closed")
        self.start()

        now = self.clock()
        if not force_new:
            existing = self._pending.get(key)
            if existing is not None:
                if now - existing.created_at < self.max_pending_age_ms:
                    existing.subscriber_count += 1
                    self._log(
                        "dedup join key=%s subscribers=%s",
                        key[:8],
                        existing.subscriber_count,
                    )
                    return asyncio.shield(existing.task)
                del self._pending[key]
                self._log("dedup drop stale key=%s", key[:8])

        task = asyncio.ensure_future(fn())
        entry: PendingRequest[T] = PendingRequest(task=task, created_at=now)
        self._pending[key] = entry
        task.add_done_callback(functools.partial(self._on_settled, key, entry))
        self._log("dedup new key=%s", key[:8])
        return asyncio.shield(task)

    def is_pending(self, key: str) -> bool:
        entry = self._pending.get(key)
        if entry is None:
            return False
        return self.clock() - entry.created_at < self.max_pending_age_ms

    def stats(self) -> CoordinatorStats:
        now = self.clock()
        oldest = max((now - entry.created_at for entry in self._pending.values()), default=0)
        return CoordinatorStats(
            pending_count=len(self._pending),
            total_subscribers=sum(entry.subscriber_count for entry in self._pending.values()),
            oldest_request_age_ms=oldest,
        )

    def clear(self) -> None:
        self._pending.clear()
        self._log("dedup cleared all pending requests")

    def sweep(self) -> int:
        now = self.clock()
        stale = [
            key
            for key, entry in self._pending.items()
            if now - entry.created_at > self.max_pending_age_ms
        ]
        for key in stale:
            del self._pending[key]
        if stale:
            self._log("dedup swept stale requests=%s", len(stale))
        return len(stale)

    def _on_settled(self, key: str, entry: PendingRequest[Any], task: asyncio.Future[Any]) -> None:
        if not task.cancelled():
            # Mark the exception retrieved; subscribers get it through their shields.
            task.exception()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._release(key, entry)
            return
        loop.call_later(self.debounce_interval_ms / 1000, self._release, key, entry)

    def _release(self, key: str, entry: PendingRequest[Any]) -> None:
        # A newer request may own the key by now; only drop our own entry.
        if self._pending.get(key) is entry:
            del self._pending[key]
            self._log("dedup released key=%s", key[:8])

    async def _sweep_loop(self) -> None:
        interval = self.max_pending_age_ms / 2 / 1000
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def _log(self, message: str, *args: object) -> None:
        if self.enable_logging:
            logger.info(message, *args)


def with_deduplication(
    coordinator: RequestCoordinator,
    key_prefix: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate an async function so identical concurrent calls share one execution."""

    def decorator(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            raw_key = f"{key_prefix}:{_dump_args(args, kwargs)}"
            key = request_fingerprint(raw_key)
            return await coordinator.execute(key, lambda: fn(*args, **kwargs))

        return wrapper

    return decorator


def _dump_args(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    return json.dumps([list(args), kwargs], sort_keys=True, ensure_ascii=False, default=str)

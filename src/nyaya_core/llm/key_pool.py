from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from nyaya_core.errors import ApiKeyUnavailableError
from nyaya_core.schemas import now_ms

DEFAULT_KEY_COOLDOWN_MS = 60_000

logger = logging.getLogger(__name__)


class ApiKeyPool:
    """Ordered API keys with a per-key cooldown after quota or auth failures.

    A failed key is skipped until strictly more than ``cooldown_ms`` has
    passed since it was marked, then it becomes available again.
    """

    def __init__(
        self,
        keys: Iterable[str],
        *,
        cooldown_ms: int = DEFAULT_KEY_COOLDOWN_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        unique: list[str] = []
        for key in keys:
            normalized = key.strip()
            if normalized and normalized not in unique:
                unique.append(normalized)
        if not unique:
            raise ValueError("Gemini API key is empty.")
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms must be >= 0.")

        self.keys = tuple(unique)
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._failed_at: dict[str, int] = {}

    @classmethod
    def from_env_value(
        cls,
        value: str,
        *,
        cooldown_ms: int = DEFAULT_KEY_COOLDOWN_MS,
        clock: Callable[[], int] = now_ms,
    ) -> ApiKeyPool:
        return cls(value.split(","), cooldown_ms=cooldown_ms, clock=clock)

    def available_keys(self) -> list[str]:
        now = self._clock()
        available: list[str] = []
        for key in self.keys:
            failed_at = self._failed_at.get(key)
            if failed_at is not None and now - failed_at <= self.cooldown_ms:
                continue
            self._failed_at.pop(key, None)
            available.append(key)
        return available

    def require_available(self) -> list[str]:
        available = self.available_keys()
        if not available:
            raise ApiKeyUnavailableError(
                "All API keys are temporarily unavailable. Wait for the cooldown and retry."
            )
        return available

    def mark_failed(self, key: str) -> None:
        if key not in self.keys:
            raise KeyError(key)
        self._failed_at[key] = self._clock()
        logger.warning(
            "api key ending in ...%s marked as failed, cooldown_ms=%s",
            key[-4:],
            self.cooldown_ms,
        )

    def failed_count(self) -> int:
        now = self._clock()
        return sum(
            1 for failed_at in self._failed_at.values() if now - failed_at <= self.cooldown_ms
        )

    def reset(self) -> None:
        self._failed_at.clear()

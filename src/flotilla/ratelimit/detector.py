"""Detecting throttling in executor output."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import Callable, Iterable

from ..executor import TaskExecution

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS: tuple[str, ...] = (
    r"rate[ _]limit",
    r"\b429\b",
    r"too many requests",
    r"exceeded.*quota",
    r"quota exceeded",
    r"temporarily unavailable",
    r"request limit",
)


class RateLimitDetector:
    """Match rate-limit markers in free text."""

    def __init__(self, patterns: Iterable[str] | None = None, *, tail_chars: int = 4000) -> None:
        self._patterns = [re.compile(pattern, re.IGNORECASE) for pattern in (patterns or DEFAULT_PATTERNS)]
        self._tail_chars = tail_chars

    @property
    def patterns(self) -> list[str]:
        return [pattern.pattern for pattern in self._patterns]

    def matches(self, text: str | None) -> bool:
        if not text:
            return False
        return any(pattern.search(text) for pattern in self._patterns)

    def scan_tail(self, text: str | None, chars: int | None = None) -> bool:
        """Check only the most recent output."""

        if not text:
            return False
        return self.matches(text[-(chars or self._tail_chars):])

    def __call__(self, text: str) -> bool:
        return self.matches(text)


class RateLimitWatcher:
    """Periodically scan a running execution's recent output for throttling.

    Executors that never surface a structured rate-limit flag still print the
    provider's error text; the watcher marks such invocations so that a failed
    terminal result can be reclassified as throttled.
    """

    def __init__(
        self,
        detector: RateLimitDetector,
        execution: TaskExecution,
        *,
        interval: float,
        on_detect: Callable[[], None] | None = None,
    ) -> None:
        self._detector = detector
        self._execution = execution
        self._interval = interval
        self._on_detect = on_detect
        self._task: asyncio.Task | None = None
        self.detected = False

    def start(self) -> "RateLimitWatcher":
        if self._interval > 0:
            self._task = asyncio.create_task(self._watch())
        return self

    def check(self) -> bool:
        if not self.detected and self._detector.scan_tail(self._execution.recent_output()):
            self.detected = True
            logger.warning("Rate limit suspected in executor output")
            if self._on_detect is not None:
                self._on_detect()
        return self.detected

    async def stop(self) -> bool:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        return self.check()

    async def _watch(self) -> None:
        while not self._execution.done():
            await asyncio.sleep(self._interval)
            if self.check():
                return


__all__ = ["DEFAULT_PATTERNS", "RateLimitDetector", "RateLimitWatcher"]

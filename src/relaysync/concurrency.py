"""Bounded parallelism and cancellation for per-issue sync work.

Sync runs sequentially by default (one remote call at a time, friendly to
rate-limited APIs). With ``max_workers > 1`` per-issue work is spread over a
thread pool; every store write still funnels through the store lock and
counts are gathered by a lock-protected ``ResultCollector``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from .logging import StructuredLogger, get_logger
from .models import SyncResult

T = TypeVar("T")


class ConcurrencyConfig:
    """Configuration for concurrency settings."""

    def __init__(self, max_workers: int = 1):
        self.max_workers = max(1, int(max_workers))

    @property
    def enabled(self) -> bool:
        return self.max_workers > 1


class ResultCollector:
    """Thread-safe accumulator around a ``SyncResult``."""

    def __init__(self, result: SyncResult | None = None) -> None:
        self._result = result or SyncResult()
        self._lock = threading.Lock()

    def incr(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._result, counter, getattr(self._result, counter) + amount)

    def add_error(self, message: str) -> None:
        with self._lock:
            self._result.errors.append(message)

    def mark_cancelled(self) -> None:
        with self._lock:
            self._result.cancelled = True

    @property
    def result(self) -> SyncResult:
        with self._lock:
            return self._result


class ConcurrentProcessor:
    """Runs a per-item callable sequentially or on a bounded thread pool.

    Once ``cancel_event`` is set no new item starts; items already running
    finish. Returns the number of items that actually ran.
    """

    def __init__(self, config: ConcurrencyConfig, logger: StructuredLogger | None = None):
        self.config = config
        self.logger = logger or get_logger()

    def process(
        self,
        items: Sequence[T],
        func: Callable[[T], None],
        *,
        cancel_event: threading.Event | None = None,
        on_cancel: Callable[[], None] | None = None,
    ) -> int:
        ran = 0
        ran_lock = threading.Lock()
        cancelled = threading.Event()

        def _run(item: T) -> None:
            nonlocal ran
            if cancel_event is not None and cancel_event.is_set():
                cancelled.set()
                return
            func(item)
            with ran_lock:
                ran += 1

        start = time.perf_counter()
        if not self.config.enabled or len(items) <= 1:
            for item in items:
                _run(item)
                if cancelled.is_set():
                    break
        else:
            workers = get_optimal_worker_count(len(items), self.config.max_workers)
            self.logger.log_operation(
                "concurrent_processing_start", item_count=len(items), max_workers=workers
            )
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(_run, item) for item in items]
                for future in futures:
                    future.result()
            self.logger.log_performance(
                "concurrent_processing",
                (time.perf_counter() - start) * 1000,
                item_count=len(items),
            )
        if cancelled.is_set() and on_cancel is not None:
            on_cancel()
        return ran


def get_optimal_worker_count(item_count: int, max_workers: int = 4) -> int:
    """Worker count scaled to the batch size, never above ``max_workers``."""
    small_threshold = 5
    medium_threshold = 20
    large_threshold = 50
    if item_count <= small_threshold:
        return min(item_count, max_workers) or 1
    if item_count <= medium_threshold:
        return min(4, max_workers)
    if item_count <= large_threshold:
        return min(8, max_workers)
    return max_workers


__all__ = [
    "ConcurrencyConfig",
    "ConcurrentProcessor",
    "ResultCollector",
    "get_optimal_worker_count",
]

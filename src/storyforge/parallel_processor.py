"""Bounded concurrent processing for illustration work."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


@dataclass
class ProcessingResult(Generic[T, R]):
    """Result of a processing task."""
    task_id: T
    success: bool
    result: Optional[R]
    error: Optional[BaseException]
    duration: float
    start_time: float
    end_time: float


class BoundedWorkerPool:
    """Runs coroutines with at most ``max_concurrent`` in flight at once.

    Results are yielded on the caller's task as they complete, so progress
    bookkeeping never needs a lock. Leaving the iteration early (including
    through cancellation) cancels and awaits every outstanding worker.
    """

    def __init__(self, max_concurrent: int = 2):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

        self.in_flight = 0
        self.peak_in_flight = 0

        # Performance tracking
        self.performance_stats: Dict[str, Any] = {
            'tasks_completed': 0,
            'tasks_failed': 0,
            'total_processing_time': 0.0,
            'average_task_time': 0.0,
        }

    async def _run_one(self, task_id: T, func: Callable[[T], Awaitable[R]]) -> ProcessingResult:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            start_time = time.time()
            try:
                result = await func(task_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                end_time = time.time()
                self.performance_stats['tasks_failed'] += 1
                logger.warning(f"Worker task {task_id} failed: {e}")
                return ProcessingResult(task_id, False, None, e, end_time - start_time, start_time, end_time)
            finally:
                self.in_flight -= 1

        end_time = time.time()
        duration = end_time - start_time
        self.performance_stats['tasks_completed'] += 1
        self.performance_stats['total_processing_time'] += duration
        self.performance_stats['average_task_time'] = (
            self.performance_stats['total_processing_time'] /
            self.performance_stats['tasks_completed']
        )
        return ProcessingResult(task_id, True, result, None, duration, start_time, end_time)

    async def map_unordered(
        self,
        items: Iterable[T],
        func: Callable[[T], Awaitable[R]],
    ) -> AsyncIterator[ProcessingResult]:
        """Apply ``func`` to every item and yield results in completion order."""
        tasks = [asyncio.create_task(self._run_one(item, func)) for item in items]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.debug(f"Cancelled {len(pending)} outstanding worker tasks")

    async def run_all(self, items: Iterable[T], func: Callable[[T], Awaitable[R]]) -> Dict[T, ProcessingResult]:
        """Collect every result, keyed by item."""
        results = {}
        async for result in self.map_unordered(items, func):
            results[result.task_id] = result
        return results

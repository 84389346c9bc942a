"""Bounded worker pool for transfer tasks."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional, Tuple

log = logging.getLogger(__name__)


@dataclass
class TaskResult:
    key: str
    value: Any = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class WorkerPool:
    """Runs at most ``max_concurrency`` tasks at once.

    Tasks beyond the ceiling wait in the executor queue and start as soon as
    any running task finishes, successful or not. A failing task never
    cancels its siblings; its exception is reported in its TaskResult.
    """

    def __init__(self, max_concurrency: int = 3, should_stop: Optional[Callable[[], bool]] = None):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.should_stop = should_stop or (lambda: False)

    def _guarded(self, key: str, fn: Callable[[], Any]) -> TaskResult:
        if self.should_stop():
            return TaskResult(key, skipped=True)
        try:
            return TaskResult(key, value=fn())
        except Exception as e:
            return TaskResult(key, error=e)

    def run(self, tasks: Iterable[Tuple[str, Callable[[], Any]]]) -> Iterator[TaskResult]:
        """Yield one TaskResult per task, in completion order."""
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="transfer") as executor:
            futures = [executor.submit(self._guarded, key, fn) for key, fn in tasks]
            for future in as_completed(futures):
                yield future.result()

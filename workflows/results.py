"""Result sink: ordered log of task outcomes for one run."""

import logging
from typing import Callable, Iterator

from workflows.models import ExecutionResult

logger = logging.getLogger(__name__)

ResultListener = Callable[[ExecutionResult], None]


class ResultSink:
    """
    Append-only list of ExecutionResults in completion order.

    Cleared when a run starts. Listeners are called on every append so a UI
    can render results while the run is still in progress.
    """

    def __init__(self):
        self._results: list[ExecutionResult] = []
        self._listeners: list[ResultListener] = []

    def clear(self) -> None:
        self._results.clear()

    def append(self, result: ExecutionResult) -> None:
        self._results.append(result)
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Result listener failed for task {result.task_id}: {e}")

    def subscribe(self, listener: ResultListener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── read-only view ─────────────────────────────────────────────
    @property
    def results(self) -> tuple[ExecutionResult, ...]:
        return tuple(self._results)

    def __iter__(self) -> Iterator[ExecutionResult]:
        return iter(tuple(self._results))

    def __len__(self) -> int:
        return len(self._results)

    def __getitem__(self, index: int) -> ExecutionResult:
        return self._results[index]

    def for_task(self, task_id: str) -> list[ExecutionResult]:
        return [r for r in self._results if r.task_id == task_id]

    def errors(self) -> list[ExecutionResult]:
        return [r for r in self._results if not r.ok]

    def summary(self) -> dict:
        failed = len(self.errors())
        return {
            "total": len(self._results),
            "completed": len(self._results) - failed,
            "failed": failed,
        }

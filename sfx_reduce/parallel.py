"""Fixed-size worker pool for independent per-crystal tasks.

The calling thread acts as the only coordinator. It hands the next item to
an idle worker, and it alone runs the completion callback, so callbacks may
update shared counters without locking. Each item is wrapped in exactly one
:class:`Task` which is submitted exactly once.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class Task(Generic[T]):
    index: int
    item: T
    result: Any = None
    error: BaseException | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _run_task(work: Callable[[T], Any], task: Task[T]) -> Task[T]:
    try:
        task.result = work(task.item)
    except Exception as exc:
        # The failure stays with this item; the remaining items still run
        task.error = exc
        logger.error("Task %d failed: %r", task.index, exc, exc_info=True)
    return task


def run_threads(
    n_threads: int,
    work: Callable[[T], Any],
    items: Iterable[T],
    done: Callable[[Task[T]], None] | None = None,
    *,
    label: str = "worker",
) -> list[Task[T]]:
    """Run ``work(item)`` for every item on up to *n_threads* threads.

    Returns the tasks in item order. An exception raised by *work* is stored
    on its task and logged; the other items are still dispatched.
    """
    tasks = [Task(index, item) for index, item in enumerate(items)]
    if not tasks:
        return tasks

    n_workers = max(1, min(int(n_threads), len(tasks)))
    pending: dict[Future, Task[T]] = {}
    next_index = 0
    n_done = 0

    with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix=label) as pool:

        def submit_next() -> None:
            nonlocal next_index
            task = tasks[next_index]
            next_index += 1
            pending[pool.submit(_run_task, work, task)] = task

        while next_index < len(tasks) and len(pending) < n_workers:
            submit_next()

        while pending:
            finished, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in finished:
                task = pending.pop(future)
                n_done += 1
                if done is not None:
                    done(task)
                if next_index < len(tasks):
                    submit_next()

    logger.debug("%s: %d tasks done on %d threads", label, n_done, n_workers)
    return tasks

"""Graph executor connecting the scheduler to a thread pool.

Evaluates a stage graph by:
1. Using DependencyScheduler to resolve stage ordering
2. Submitting ready stages to a ThreadPoolExecutor
3. Recording each stage's result or exception when its future completes
4. Blocking stages whose dependencies failed (unless they tolerate failures)
5. Supporting Ctrl-C cancellation: pending futures are cancelled, cancel
   hooks kill running tool processes, and remaining stages are failed
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from hermbuild.errors import GraphCancelledError

from .callbacks import NullCallback, ProgressCallback
from .models import GraphResult, StagePhase, StageTask
from .scheduler import DependencyScheduler

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class GraphExecutor:
    """Evaluates stage graphs on a thread pool.

    Args:
        max_workers: Maximum concurrently running stages.
        callback: Receives stage transitions.
    """

    def __init__(self, max_workers: int = 4, callback: Optional[ProgressCallback] = None) -> None:
        self._max_workers = max(1, max_workers)
        self._callback: ProgressCallback = callback if callback is not None else NullCallback()
        self._cancelled = False
        self._lock = threading.Lock()
        self._cancel_hooks: list[Callable[[], None]] = []

    def add_cancel_hook(self, hook: Callable[[], None]) -> None:
        """Register a function called when evaluation is cancelled."""
        self._cancel_hooks.append(hook)

    def run(self, tasks: list[StageTask]) -> GraphResult:
        """Evaluate the graph.

        Stages already in a terminal phase (memoized results) are not rerun.
        Returns when every stage is DONE, FAILED or BLOCKED.

        Raises:
            CyclicDependencyError: If the graph contains a cycle.
            GraphCancelledError: If cancel() was called during evaluation.
        """
        start_time = time.monotonic()
        with self._lock:
            self._cancelled = False

        if not tasks:
            return GraphResult(tasks=[], total_elapsed=0.0, success=True)

        scheduler = DependencyScheduler()
        for task in tasks:
            scheduler.add_task(task)
        scheduler.validate()

        active: dict[Future[Any], str] = {}

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="stage") as pool:
            try:
                while not scheduler.all_done():
                    if self._is_cancelled():
                        self._abort(active, scheduler, "Cancelled")
                        raise GraphCancelledError("Graph evaluation was cancelled")

                    self._block_tasks(scheduler)

                    for task in scheduler.get_ready_tasks():
                        self._submit(task, scheduler, pool, active)

                    if active:
                        done, _ = wait(list(active), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                        for future in done:
                            self._complete(future, active.pop(future), scheduler)
                    elif not scheduler.get_ready_tasks() and not scheduler.get_blocked_tasks():
                        break

            except KeyboardInterrupt:
                self._abort(active, scheduler, "Interrupted by user")
                raise

        total_elapsed = time.monotonic() - start_time
        all_tasks = scheduler.get_all_tasks()
        success = all(t.phase is StagePhase.DONE for t in all_tasks)
        return GraphResult(tasks=all_tasks, total_elapsed=total_elapsed, success=success)

    def cancel(self) -> None:
        """Request cancellation. Thread-safe."""
        with self._lock:
            self._cancelled = True

    def _is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def _submit(
        self,
        task: StageTask,
        scheduler: DependencyScheduler,
        pool: ThreadPoolExecutor,
        active: dict[Future[Any], str],
    ) -> None:
        inputs = scheduler.dependency_inputs(task)
        task.mark_started()
        scheduler.mark_phase(task.name, StagePhase.RUNNING)
        self._callback.on_stage(task.name, StagePhase.RUNNING, "")
        active[pool.submit(task.func, inputs)] = task.name

    def _complete(self, future: Future[Any], name: str, scheduler: DependencyScheduler) -> None:
        task = scheduler.get_task(name)
        try:
            result = future.result()
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logger.debug("Stage %s failed: %s", name, e)
            task.fail(e)
            self._callback.on_stage(name, StagePhase.FAILED, task.error_message)
            return
        task.complete(result)
        self._callback.on_stage(name, StagePhase.DONE, f"{task.elapsed:.1f}s")

    def _block_tasks(self, scheduler: DependencyScheduler) -> None:
        for task, failed_dep in scheduler.get_blocked_tasks():
            task.block(failed_dep)
            self._callback.on_stage(task.name, StagePhase.BLOCKED, task.error_message)

    def _abort(self, active: dict[Future[Any], str], scheduler: DependencyScheduler, reason: str) -> None:
        for future in active:
            future.cancel()
        for hook in self._cancel_hooks:
            hook()
        cancelled = GraphCancelledError(reason)
        for task in scheduler.get_all_tasks():
            if not task.phase.terminal:
                task.fail(cancelled, reason)

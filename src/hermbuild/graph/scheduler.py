"""DAG-based dependency scheduler for the stage graph.

Resolves stage dependencies and emits stages in topological order, ensuring
that a stage only becomes ready when all its dependencies have completed
(or, for failure-tolerant stages, have reached any terminal phase).
"""

import threading
from typing import Any

from hermbuild.errors import CyclicDependencyError

from .models import StagePhase, StageTask


class DependencyScheduler:
    """Schedules stage tasks based on their dependency DAG.

    Thread-safe: executor threads can call mark_phase() concurrently while
    the main loop calls get_ready_tasks().

    Usage:
        scheduler = DependencyScheduler()
        scheduler.add_task(sources)
        scheduler.add_task(deps)
        scheduler.validate()  # raises CyclicDependencyError if cycle detected

        while not scheduler.all_done():
            for task in scheduler.get_ready_tasks():
                pool.submit(task)
    """

    def __init__(self) -> None:
        self._tasks: dict[str, StageTask] = {}
        self._lock = threading.Lock()

    def add_task(self, task: StageTask) -> None:
        """Add a stage.

        Raises:
            ValueError: If a stage with the same name already exists.
        """
        with self._lock:
            if task.name in self._tasks:
                raise ValueError(f"Duplicate stage name: {task.name}")
            self._tasks[task.name] = task

    def validate(self) -> None:
        """Validate the graph.

        Raises:
            ValueError: If a dependency references a non-existent stage.
            CyclicDependencyError: If the graph contains a cycle.
        """
        with self._lock:
            self._validate_references()
            self._detect_cycles()

    def _validate_references(self) -> None:
        for task in self._tasks.values():
            for dep_name in task.dependencies:
                if dep_name not in self._tasks:
                    raise ValueError(f"Stage '{task.name}' depends on unknown stage '{dep_name}'")

    def _detect_cycles(self) -> None:
        """Detect cycles using DFS with coloring (white/gray/black)."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color: dict[str, int] = {name: WHITE for name in self._tasks}

        def dfs(name: str, path: list[str]) -> None:
            color[name] = GRAY
            path.append(name)
            for dep_name in self._tasks[name].dependencies:
                if color[dep_name] == GRAY:
                    cycle_start = path.index(dep_name)
                    cycle = path[cycle_start:] + [dep_name]
                    raise CyclicDependencyError(f"Cyclic dependency detected: {' -> '.join(cycle)}")
                if color[dep_name] == WHITE:
                    dfs(dep_name, path)
            path.pop()
            color[name] = BLACK

        for name in self._tasks:
            if color[name] == WHITE:
                dfs(name, [])

    def get_ready_tasks(self) -> list[StageTask]:
        """Return WAITING stages whose dependencies allow them to start."""
        with self._lock:
            return [t for t in self._tasks.values() if t.phase is StagePhase.WAITING and self._deps_satisfied(t)]

    def _deps_satisfied(self, task: StageTask) -> bool:
        for dep_name in task.dependencies:
            dep = self._tasks[dep_name]
            if task.tolerate_failures:
                if not dep.phase.terminal:
                    return False
            elif dep.phase is not StagePhase.DONE:
                return False
        return True

    def mark_phase(self, task_name: str, phase: StagePhase) -> None:
        """Update a stage's phase.

        Raises:
            KeyError: If the stage name doesn't exist.
        """
        with self._lock:
            if task_name not in self._tasks:
                raise KeyError(f"Unknown stage: {task_name}")
            self._tasks[task_name].phase = phase

    def get_task(self, task_name: str) -> StageTask:
        with self._lock:
            if task_name not in self._tasks:
                raise KeyError(f"Unknown stage: {task_name}")
            return self._tasks[task_name]

    def dependency_inputs(self, task: StageTask) -> dict[str, Any]:
        """Results of a stage's dependencies (errors for failed ones)."""
        with self._lock:
            inputs: dict[str, Any] = {}
            for dep_name in task.dependencies:
                dep = self._tasks[dep_name]
                inputs[dep_name] = dep.result if dep.phase is StagePhase.DONE else dep.error
            return inputs

    def all_done(self) -> bool:
        with self._lock:
            return all(t.phase.terminal for t in self._tasks.values())

    def has_failed(self) -> bool:
        with self._lock:
            return any(t.phase is StagePhase.FAILED for t in self._tasks.values())

    def get_blocked_tasks(self) -> list[tuple[StageTask, StageTask]]:
        """Return (stage, failed dependency) for WAITING stages that can never run.

        Failure-tolerant stages are never blocked.
        """
        with self._lock:
            blocked = []
            for task in self._tasks.values():
                if task.phase is not StagePhase.WAITING or task.tolerate_failures:
                    continue
                for dep_name in task.dependencies:
                    dep = self._tasks[dep_name]
                    if dep.phase in (StagePhase.FAILED, StagePhase.BLOCKED):
                        blocked.append((task, dep))
                        break
            return blocked

    def get_all_tasks(self) -> list[StageTask]:
        with self._lock:
            return list(self._tasks.values())

    @property
    def task_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {"tasks": {name: task.to_dict() for name, task in self._tasks.items()}}

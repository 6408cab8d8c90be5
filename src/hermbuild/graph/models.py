"""Data models for the stage graph.

Defines the core dataclasses used by the scheduler and executor:
- StagePhase: Enum tracking where a stage is in its lifecycle
- StageTask: One node of the build graph (a callable plus its dependencies)
- GraphResult: Aggregated result of evaluating a graph
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

StageFunc = Callable[[dict[str, Any]], Any]


class StagePhase(Enum):
    """Phase of a stage in the graph."""

    WAITING = "waiting"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in (StagePhase.DONE, StagePhase.FAILED, StagePhase.BLOCKED)


@dataclass
class StageTask:
    """A single stage of the build graph.

    The stage function receives a mapping of dependency name to that
    dependency's result. A stage that tolerates failures is still run when a
    dependency failed or was blocked; the mapping then holds the exception.

    Attributes:
        name: Unique stage name (e.g. "deps:x86_64-linux")
        func: Callable computing the stage result from dependency results
        dependencies: Names of stages that must finish first
        tolerate_failures: Run even if a dependency failed
        phase: Current phase
        result: Return value of func once DONE
        error: Exception raised by func (or inherited from a failed dependency)
        error_message: Human-readable failure detail
        start_time: Monotonic timestamp when the stage started
        elapsed: Elapsed seconds
    """

    name: str
    func: StageFunc
    dependencies: list[str] = field(default_factory=list)
    tolerate_failures: bool = False
    phase: StagePhase = StagePhase.WAITING
    result: Any = None
    error: Optional[BaseException] = None
    error_message: str = ""
    start_time: float | None = None
    elapsed: float = 0.0

    def mark_started(self) -> None:
        self.start_time = time.monotonic()

    def update_elapsed(self) -> None:
        if self.start_time is not None:
            self.elapsed = time.monotonic() - self.start_time

    def complete(self, result: Any) -> None:
        self.phase = StagePhase.DONE
        self.result = result
        self.update_elapsed()

    def fail(self, error: BaseException, message: str = "") -> None:
        self.phase = StagePhase.FAILED
        self.error = error
        self.error_message = message or str(error)
        self.update_elapsed()

    def block(self, upstream: "StageTask") -> None:
        """Mark as blocked by a failed dependency, inheriting its error."""
        self.phase = StagePhase.BLOCKED
        self.error = upstream.error
        self.error_message = f"Dependency '{upstream.name}' failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "dependencies": list(self.dependencies),
            "tolerate_failures": self.tolerate_failures,
            "phase": self.phase.value,
            "error_message": self.error_message,
            "elapsed": self.elapsed,
        }


@dataclass
class GraphResult:
    """Aggregated result of evaluating a stage graph.

    Attributes:
        tasks: Final state of all stages
        total_elapsed: Wall-clock time in seconds
        success: True if every stage completed
    """

    tasks: list[StageTask]
    total_elapsed: float
    success: bool

    def get(self, name: str) -> StageTask:
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(f"Unknown stage: {name}")

    def result_of(self, name: str) -> Any:
        """Return a stage's result, re-raising its error if it did not complete."""
        task = self.get(name)
        if task.phase is not StagePhase.DONE:
            if task.error is not None:
                raise task.error
            raise RuntimeError(f"Stage '{name}' did not complete ({task.phase.value})")
        return task.result

    @property
    def failed_tasks(self) -> list[StageTask]:
        """Stages whose own function raised."""
        return [t for t in self.tasks if t.phase is StagePhase.FAILED]

    @property
    def blocked_tasks(self) -> list[StageTask]:
        return [t for t in self.tasks if t.phase is StagePhase.BLOCKED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "total_elapsed": self.total_elapsed,
            "success": self.success,
        }

"""Progress callback protocol for the stage graph.

Defines the callback interface the executor uses to report stage
transitions to the display layer.
"""

from typing import Protocol, runtime_checkable

from hermbuild import output

from .models import StagePhase


@runtime_checkable
class ProgressCallback(Protocol):
    """Protocol for receiving stage transitions from the executor."""

    def on_stage(self, name: str, phase: StagePhase, detail: str) -> None:
        """Called when a stage changes phase.

        Args:
            name: Stage name (e.g. "package:x86_64-linux").
            phase: New phase.
            detail: Human-readable detail (e.g. "Done in 3.2s", an error).
        """
        ...


class NullCallback:
    """No-op callback for tests and library use."""

    def on_stage(self, name: str, phase: StagePhase, detail: str) -> None:
        pass


class LineCallback:
    """Plain timestamped lines, for non-interactive terminals and CI logs."""

    def on_stage(self, name: str, phase: StagePhase, detail: str) -> None:
        if phase is StagePhase.RUNNING:
            output.log(f"{name} ...", verbose_only=True)
        elif phase is StagePhase.DONE:
            output.log(f"{name}: {detail}" if detail else name)
        elif phase in (StagePhase.FAILED, StagePhase.BLOCKED):
            output.log(f"{name}: {phase.value}: {detail}")

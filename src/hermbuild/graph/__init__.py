"""Stage graph: DAG scheduling, threaded evaluation and progress display."""

from .callbacks import LineCallback, NullCallback, ProgressCallback
from .executor import GraphExecutor
from .models import GraphResult, StagePhase, StageTask
from .progress_display import StageProgressDisplay
from .scheduler import DependencyScheduler

__all__ = [
    "DependencyScheduler",
    "GraphExecutor",
    "GraphResult",
    "LineCallback",
    "NullCallback",
    "ProgressCallback",
    "StagePhase",
    "StageProgressDisplay",
    "StageTask",
]

"""Unit tests for the thread-pool graph executor."""

import threading
import time

import pytest

from hermbuild.errors import CyclicDependencyError, GraphCancelledError
from hermbuild.graph.executor import GraphExecutor
from hermbuild.graph.models import StagePhase, StageTask


class RecordingCallback:
    """Collects (name, phase) transitions."""

    def __init__(self):
        self.events: list[tuple[str, StagePhase]] = []
        self._lock = threading.Lock()

    def on_stage(self, name, phase, detail):
        with self._lock:
            self.events.append((name, phase))


def _fail(message):
    def func(inputs):
        raise RuntimeError(message)

    return func


class TestGraphExecutor:
    """Test evaluating stage graphs."""

    def test_empty_graph(self):
        """An empty graph succeeds immediately."""
        result = GraphExecutor().run([])
        assert result.success
        assert result.tasks == []

    def test_results_flow_to_dependents(self):
        """Each stage receives its dependencies' results by name."""
        tasks = [
            StageTask("sources", lambda inputs: ["Cargo.toml", "src/main.rs"]),
            StageTask("toolchain", lambda inputs: "1.79.0"),
            StageTask("deps", lambda inputs: f"{inputs['toolchain']}:{len(inputs['sources'])}", ["sources", "toolchain"]),
        ]
        result = GraphExecutor(max_workers=2).run(tasks)

        assert result.success
        assert result.result_of("deps") == "1.79.0:2"

    def test_independent_stages_run_concurrently(self):
        """Stages without edges between them overlap in time."""
        barrier = threading.Barrier(3, timeout=5)

        def meet(inputs):
            barrier.wait()
            return True

        tasks = [StageTask(f"deps:{i}", meet) for i in range(3)]
        result = GraphExecutor(max_workers=3).run(tasks)
        assert result.success

    def test_failure_blocks_dependents_only(self):
        """A failed stage blocks its dependents but not unrelated stages."""
        callback = RecordingCallback()
        tasks = [
            StageTask("deps:x86_64-linux", _fail("exit code 101")),
            StageTask("package:x86_64-linux", lambda inputs: "pkg", ["deps:x86_64-linux"]),
            StageTask("deps:aarch64-linux", lambda inputs: "ok"),
        ]
        result = GraphExecutor(callback=callback).run(tasks)

        assert not result.success
        assert result.get("deps:x86_64-linux").phase is StagePhase.FAILED
        assert result.get("package:x86_64-linux").phase is StagePhase.BLOCKED
        assert result.get("deps:aarch64-linux").phase is StagePhase.DONE
        assert ("package:x86_64-linux", StagePhase.BLOCKED) in callback.events
        with pytest.raises(RuntimeError, match="exit code 101"):
            result.result_of("package:x86_64-linux")

    def test_tolerant_stage_receives_error(self):
        """A failure-tolerant stage runs and sees the upstream exception."""
        seen = {}

        def report(inputs):
            seen.update(inputs)
            return "reported"

        tasks = [
            StageTask("deps", _fail("exit code 101")),
            StageTask("package", lambda inputs: "pkg", ["deps"]),
            StageTask("check:package-build", report, ["package"], tolerate_failures=True),
        ]
        result = GraphExecutor().run(tasks)

        assert result.result_of("check:package-build") == "reported"
        assert isinstance(seen["package"], RuntimeError)

    def test_memoized_stages_not_rerun(self):
        """Stages already DONE keep their result and are not called again."""
        calls = []
        sources = StageTask("sources", lambda inputs: calls.append("sources"))
        sources.complete("cached tree")
        tasks = [sources, StageTask("deps", lambda inputs: inputs["sources"], ["sources"])]

        result = GraphExecutor().run(tasks)

        assert calls == []
        assert result.result_of("deps") == "cached tree"

    def test_cycle_rejected(self):
        """A cyclic graph is rejected before anything runs."""
        tasks = [StageTask("a", lambda inputs: 1, ["b"]), StageTask("b", lambda inputs: 2, ["a"])]
        with pytest.raises(CyclicDependencyError):
            GraphExecutor().run(tasks)

    def test_cancel_runs_hooks_and_fails_remaining(self):
        """cancel() stops evaluation, calls hooks and raises GraphCancelledError."""
        executor = GraphExecutor(max_workers=1)
        hook_called = threading.Event()
        release = threading.Event()
        executor.add_cancel_hook(hook_called.set)
        executor.add_cancel_hook(release.set)

        def slow(inputs):
            executor.cancel()
            release.wait(5)
            return "late"

        later = StageTask("package", lambda inputs: "pkg", ["deps"])
        with pytest.raises(GraphCancelledError):
            executor.run([StageTask("deps", slow), later])

        assert hook_called.is_set()
        assert later.phase is StagePhase.FAILED
        assert isinstance(later.error, GraphCancelledError)

    def test_elapsed_recorded(self):
        """Completed stages record their elapsed time."""
        result = GraphExecutor().run([StageTask("sleep", lambda inputs: time.sleep(0.05))])
        assert result.get("sleep").elapsed >= 0.04
        assert result.total_elapsed >= 0.04

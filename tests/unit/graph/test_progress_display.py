"""Unit tests for the Rich stage progress display."""

from io import StringIO

from rich.console import Console

from hermbuild import output
from hermbuild.graph.callbacks import LineCallback, NullCallback, ProgressCallback
from hermbuild.graph.models import StagePhase
from hermbuild.graph.progress_display import StageProgressDisplay


def _display() -> tuple[StageProgressDisplay, StringIO]:
    buffer = StringIO()
    console = Console(file=buffer, force_terminal=False, width=120)
    return StageProgressDisplay(console=console, title="lunatic x86_64-linux", refresh_per_second=4), buffer


class TestStageProgressDisplay:
    """Tests for StageProgressDisplay."""

    def test_implements_protocol(self) -> None:
        """All callbacks satisfy ProgressCallback."""
        display, _ = _display()
        assert isinstance(display, ProgressCallback)
        assert isinstance(LineCallback(), ProgressCallback)
        assert isinstance(NullCallback(), ProgressCallback)

    def test_registered_stages_keep_order(self) -> None:
        """Registered stages appear as Waiting in registration order."""
        display, _ = _display()
        display.register_stage("sources")
        display.register_stage("deps:x86_64-linux")
        display.register_stage("sources")

        snapshot = display.get_snapshot()
        assert [s["name"] for s in snapshot] == ["sources", "deps:x86_64-linux"]
        assert all(s["phase"] is StagePhase.WAITING for s in snapshot)

    def test_transitions_update_state(self) -> None:
        """on_stage() records phase and detail, adding unknown stages."""
        display, _ = _display()
        display.register_stage("deps:x86_64-linux")
        display.on_stage("deps:x86_64-linux", StagePhase.RUNNING, "")
        display.on_stage("deps:x86_64-linux", StagePhase.FAILED, "exit code 101")
        display.on_stage("package:x86_64-linux", StagePhase.BLOCKED, "Dependency 'deps:x86_64-linux' failed")

        snapshot = {s["name"]: s for s in display.get_snapshot()}
        assert snapshot["deps:x86_64-linux"]["phase"] is StagePhase.FAILED
        assert snapshot["deps:x86_64-linux"]["detail"] == "exit code 101"
        assert snapshot["package:x86_64-linux"]["phase"] is StagePhase.BLOCKED

    def test_renders_to_console(self) -> None:
        """The context manager renders a final table with a footer."""
        display, buffer = _display()
        with display:
            display.on_stage("sources", StagePhase.DONE, "0.1s")
            display.on_stage("deps:x86_64-linux", StagePhase.FAILED, "exit code 101")

        text = buffer.getvalue()
        assert "Evaluating lunatic x86_64-linux" in text
        assert "sources" in text
        assert "exit code 101" in text
        assert "2 stages" in text


class TestLineCallback:
    """Tests for the plain line callback."""

    def test_done_and_failed_lines(self) -> None:
        """Finished stages are logged; running stages only when verbose."""
        buffer = StringIO()
        output.init_timer(buffer)
        callback = LineCallback()

        callback.on_stage("deps:x86_64-linux", StagePhase.RUNNING, "")
        callback.on_stage("deps:x86_64-linux", StagePhase.DONE, "3.2s")
        callback.on_stage("package:x86_64-linux", StagePhase.FAILED, "exit code 101")

        text = buffer.getvalue()
        assert "deps:x86_64-linux ..." not in text
        assert "deps:x86_64-linux: 3.2s" in text
        assert "package:x86_64-linux: failed: exit code 101" in text

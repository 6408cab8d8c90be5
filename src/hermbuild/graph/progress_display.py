"""Rich-based live progress display for the stage graph.

Renders one line per stage that transitions through phases:

    deps:x86_64-linux      Running  ⠹ 12.4s
    package:x86_64-linux   Waiting
    check:lint:x86_64-linux Done    ✓ 3.2s

Thread-safe: executor threads can call on_stage() concurrently while the
display renders in the main thread.
"""

import threading
import time
from typing import Any

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .models import StagePhase

# Braille spinner frames for running stages
_SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")

_PHASE_LABELS = {
    StagePhase.WAITING: ("Waiting", "dim"),
    StagePhase.RUNNING: ("Running", "cyan"),
    StagePhase.DONE: ("Done", "green"),
    StagePhase.FAILED: ("Failed", "red bold"),
    StagePhase.BLOCKED: ("Blocked", "yellow"),
}


class _StageDisplayState:
    __slots__ = ("name", "phase", "detail", "elapsed", "start_time")

    def __init__(self, name: str) -> None:
        self.name = name
        self.phase = StagePhase.WAITING
        self.detail: str = ""
        self.elapsed: float = 0.0
        self.start_time: float | None = None


class StageProgressDisplay:
    """Live-updating stage table using Rich.

    Implements ProgressCallback.

    Args:
        console: Rich Console instance for rendering. If None, creates a new one.
        title: Header line (e.g. "lunatic x86_64-linux").
        refresh_per_second: Display refresh rate.
    """

    def __init__(self, console: Console | None, title: str, refresh_per_second: int = 10) -> None:
        self._console = console if console is not None else Console(stderr=True)
        self._title = title
        self._refresh_per_second = refresh_per_second
        self._states: dict[str, _StageDisplayState] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()
        self._live: Live | None = None

    def register_stage(self, name: str) -> None:
        """Register a stage before evaluation starts, so it shows as Waiting."""
        with self._lock:
            if name not in self._states:
                self._states[name] = _StageDisplayState(name)
                self._order.append(name)

    def on_stage(self, name: str, phase: StagePhase, detail: str) -> None:
        with self._lock:
            state = self._states.get(name)
            if state is None:
                state = _StageDisplayState(name)
                self._states[name] = state
                self._order.append(name)

            if state.phase is StagePhase.WAITING and phase is not StagePhase.WAITING:
                state.start_time = time.monotonic()
            state.phase = phase
            state.detail = detail
            if state.start_time is not None:
                state.elapsed = time.monotonic() - state.start_time

        if self._live is not None:
            self._live.update(self._render_display())

    def start(self) -> None:
        self._live = Live(
            self._render_display(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
            transient=False,
        )
        self._live.start()

    def stop(self) -> None:
        if self._live is not None:
            self._live.update(self._render_display())
            self._live.stop()
            self._live = None

    def _render_display(self) -> Group:
        header = Text(f"\nEvaluating {self._title}...\n", style="bold")
        return Group(header, self._render_table(), self._render_footer())

    def _render_table(self) -> Table:
        table = Table(show_header=False, show_edge=False, show_lines=False, box=None, padding=(0, 1), expand=False)
        table.add_column("Stage", style="bold", no_wrap=True, min_width=28)
        table.add_column("Phase", no_wrap=True, min_width=8)
        table.add_column("Status", no_wrap=True, min_width=30)

        with self._lock:
            for name in self._order:
                state = self._states[name]
                label, style = _PHASE_LABELS[state.phase]
                table.add_row(Text(name, style="dim" if state.phase is StagePhase.WAITING else "bold"), Text(label, style=style), self._format_status(state))
        return table

    def _render_footer(self) -> Text:
        with self._lock:
            total = len(self._states)
            counts = {phase: sum(1 for s in self._states.values() if s.phase is phase) for phase in StagePhase}

        parts = [f"{total} stages"]
        for phase in (StagePhase.RUNNING, StagePhase.DONE, StagePhase.FAILED, StagePhase.BLOCKED):
            if counts[phase]:
                parts.append(f"{counts[phase]} {phase.value}")
        return Text(f"\n  {', '.join(parts)}", style="dim")

    def _format_status(self, state: _StageDisplayState) -> Text:
        if state.phase is StagePhase.RUNNING:
            spinner = _SPINNER_FRAMES[int(time.monotonic() * 8) % len(_SPINNER_FRAMES)]
            elapsed = time.monotonic() - state.start_time if state.start_time is not None else 0.0
            return Text(f"{spinner} {elapsed:.1f}s", style="cyan")
        if state.phase is StagePhase.DONE:
            return Text(f"✓ {state.elapsed:.1f}s", style="green")
        if state.phase is StagePhase.FAILED:
            return Text(f"✗ {state.detail or 'Error'}", style="red")
        if state.phase is StagePhase.BLOCKED:
            return Text(state.detail, style="yellow")
        return Text("")

    def get_snapshot(self) -> list[dict[str, Any]]:
        """Current display state, for tests."""
        with self._lock:
            return [{"name": s.name, "phase": s.phase, "detail": s.detail} for s in (self._states[n] for n in self._order)]

    def __enter__(self) -> "StageProgressDisplay":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

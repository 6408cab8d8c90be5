"""
Tool invocation.

Stages never spawn processes themselves; they describe a ToolInvocation and
hand it to a ToolRunner. The subprocess runner streams combined output to the
debug log while capturing it for error reports, and it tracks running
processes so a cancelled build can take down whole process trees.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from hermbuild.subprocess_utils import kill_process_tree, safe_popen

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class ToolInvocation:
    """One tool run.

    Attributes:
        argv: Resolved command line
        cwd: Working directory
        env: Complete process environment
        label: Short description for logs (e.g. "deps:x86_64-linux")
    """

    argv: tuple[str, ...]
    cwd: Path
    env: Mapping[str, str] = field(default_factory=dict)
    label: str = ""


@dataclass(frozen=True)
class ToolResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ToolRunner(Protocol):
    """Executes tool invocations."""

    def run(self, invocation: ToolInvocation) -> ToolResult: ...

    def cancel_all(self) -> None: ...


class SubprocessToolRunner:
    """Runs tools as child processes with stdout and stderr merged."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[int, subprocess.Popen] = {}
        self._cancelled = False

    def run(self, invocation: ToolInvocation) -> ToolResult:
        label = invocation.label or invocation.argv[0]
        logger.debug("[%s] %s (cwd=%s)", label, " ".join(invocation.argv), invocation.cwd)

        try:
            process = safe_popen(
                list(invocation.argv),
                cwd=str(invocation.cwd),
                env=dict(invocation.env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            return ToolResult(returncode=EXIT_NOT_FOUND, output=f"{invocation.argv[0]}: {e}\n")

        with self._lock:
            self._active[process.pid] = process
            if self._cancelled:
                kill_process_tree(process.pid)

        lines: list[str] = []
        try:
            assert process.stdout is not None
            for line in process.stdout:
                lines.append(line)
                logger.debug("[%s] %s", label, line.rstrip())
            returncode = process.wait()
        except KeyboardInterrupt:
            kill_process_tree(process.pid)
            raise
        finally:
            with self._lock:
                self._active.pop(process.pid, None)

        if returncode != 0:
            logger.debug("[%s] exited with code %d", label, returncode)
        return ToolResult(returncode=returncode, output="".join(lines))

    def cancel_all(self) -> None:
        """Kill every running tool and refuse to leave new ones running."""
        with self._lock:
            self._cancelled = True
            pids = list(self._active)
        for pid in pids:
            killed = kill_process_tree(pid)
            logger.debug("Cancelled tool process %d (%d processes signalled)", pid, killed)


def invoke(runner: ToolRunner, argv: Sequence[str], cwd: Path, env: Mapping[str, str], label: str) -> ToolResult:
    """Convenience wrapper building the invocation."""
    return runner.run(ToolInvocation(argv=tuple(argv), cwd=cwd, env=env, label=label))

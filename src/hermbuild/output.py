"""
Centralized console output for hermbuild.

All user-facing lines are prefixed with the elapsed time since program launch
in MM:SS.cc format (minutes:seconds.centiseconds), which makes it easy to see
where a build spends its time.

Example output:
    00:00.08 hermbuild v0.3.1
    00:00.11 [1/4] Selecting sources...
    00:00.19       412 files, fingerprint 3f2a9c1d04be
    00:00.20 [2/4] Building dependencies...
    00:00.20       [deps] x86_64-linux (cached)

Usage:
    from hermbuild.output import log, log_phase, log_detail

    log("Evaluating checks for x86_64-linux...")
    log_phase(1, 4, "Selecting sources...")
    log_detail("412 files")

Diagnostic output belongs in the logging module; this module is for the lines
a user is meant to read.
"""

import sys
import time
from types import TracebackType
from typing import Optional, TextIO

# Global state for the timer
_start_time: Optional[float] = None
_output_stream: Optional[TextIO] = None
_verbose: bool = False


def init_timer(output_stream: Optional[TextIO] = None) -> None:
    """
    Initialize the program timer.

    Called automatically on first log if not called explicitly.

    Args:
        output_stream: Optional output stream (defaults to the current sys.stdout)
    """
    global _start_time, _output_stream
    _start_time = time.time()
    if output_stream is not None:
        _output_stream = output_stream


def set_verbose(verbose: bool) -> None:
    """
    Set verbose mode for logging.

    Args:
        verbose: If True, verbose-only messages are printed too.
    """
    global _verbose
    _verbose = verbose


def is_verbose() -> bool:
    """Return whether verbose-only messages are printed."""
    return _verbose


def get_elapsed() -> float:
    """
    Get elapsed time since timer initialization.

    Returns:
        Elapsed time in seconds
    """
    if _start_time is None:
        init_timer()
    return time.time() - _start_time  # type: ignore


def format_timestamp() -> str:
    """
    Format the current elapsed time as MM:SS.cc.

    Returns:
        Formatted timestamp string
    """
    elapsed = get_elapsed()
    minutes = int(elapsed // 60)
    seconds = elapsed % 60
    return f"{minutes:02d}:{seconds:05.2f}"


def _print(message: str) -> None:
    timestamp = format_timestamp()
    line = f"{timestamp} {message}\n"
    stream = _output_stream if _output_stream is not None else sys.stdout
    stream.write(line)
    stream.flush()


def log(message: str, verbose_only: bool = False) -> None:
    """
    Log a message with timestamp.

    Args:
        message: Message to log
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(message)


def log_phase(phase: int, total: int, message: str, verbose_only: bool = False) -> None:
    """
    Log a build phase message.

    Format: [N/M] message

    Args:
        phase: Current phase number
        total: Total number of phases
        message: Phase description
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(f"[{phase}/{total}] {message}")


def log_detail(message: str, indent: int = 6, verbose_only: bool = False) -> None:
    """
    Log a detail message (indented).

    Args:
        message: Detail message
        indent: Number of spaces to indent (default 6)
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    _print(f"{' ' * indent}{message}")


def log_artifact(kind: str, label: str, cached: bool = False, verbose_only: bool = False) -> None:
    """
    Log an artifact resolution.

    Format: [kind] label (cached)

    Args:
        kind: Artifact kind (e.g. 'deps', 'package')
        label: What was built (e.g. the platform key)
        cached: If True, append "(cached)" to message
        verbose_only: If True, only print if verbose mode is enabled
    """
    if verbose_only and not _verbose:
        return
    suffix = " (cached)" if cached else ""
    _print(f"      [{kind}] {label}{suffix}")


def log_header(title: str, version: str) -> None:
    """
    Log a header message (program startup).

    Args:
        title: Program title
        version: Version string
    """
    _print(f"{title} v{version}")


def log_check(kind: str, passed: bool, reason: str = "") -> None:
    """
    Log the outcome of a single verification check.

    Args:
        kind: Check kind (lint, format, package-build, test)
        passed: Whether the check passed
        reason: Failure reason (ignored when passed)
    """
    if passed:
        _print(f"      PASS {kind}")
    else:
        _print(f"      FAIL {kind}: {reason}")


def log_build_complete(build_time: float) -> None:
    """
    Log build completion message.

    Args:
        build_time: Total build time in seconds
    """
    _print(f"Done in {build_time:.2f}s")


def log_error(message: str) -> None:
    """
    Log an error message.

    Args:
        message: Error message
    """
    _print(f"ERROR: {message}")


def log_warning(message: str) -> None:
    """
    Log a warning message.

    Args:
        message: Warning message
    """
    _print(f"WARNING: {message}")


def log_block(text: str, indent: int = 8) -> None:
    """Log a multi-line block (e.g. captured tool output), one line at a time."""
    for line in text.splitlines():
        _print(f"{' ' * indent}{line}")


class TimedLogger:
    """
    Context manager for logging with elapsed time tracking.

    Usage:
        with TimedLogger("Building dependencies", phase=(2, 4)) as timer:
            ...
            timer.detail("x86_64-linux (cached)")
        # Automatically logs completion time
    """

    def __init__(self, operation: str, phase: Optional[tuple[int, int]] = None, verbose_only: bool = False):
        self.operation = operation
        self.phase = phase
        self.verbose_only = verbose_only
        self.start_time = 0.0

    def __enter__(self) -> "TimedLogger":
        self.start_time = time.time()
        if self.phase:
            log_phase(self.phase[0], self.phase[1], f"{self.operation}...", self.verbose_only)
        else:
            log(f"{self.operation}...", self.verbose_only)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        del exc_val, exc_tb  # Unused
        elapsed = time.time() - self.start_time
        if exc_type is None:
            log_detail(f"Done ({elapsed:.2f}s)", verbose_only=self.verbose_only)
        return None

    def detail(self, message: str) -> None:
        """Log a detail message within this operation."""
        log_detail(message, verbose_only=self.verbose_only)

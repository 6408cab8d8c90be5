"""Subprocess utilities for platform-safe process execution.

Wrappers around the subprocess module that apply platform-specific flags
(no console window on Windows, stdin detached from the terminal) and that can
tear down a whole process tree when a build is cancelled.
"""

import logging
import subprocess
import sys
from typing import Any

import psutil

logger = logging.getLogger(__name__)


def get_subprocess_creation_flags() -> int:
    """Get platform-specific subprocess creation flags.

    Returns:
        - Windows: subprocess.CREATE_NO_WINDOW (prevents console window)
        - Other platforms: 0 (no special flags)
    """
    if sys.platform == "win32":
        return subprocess.CREATE_NO_WINDOW
    return 0


def _apply_defaults(kwargs: dict[str, Any]) -> dict[str, Any]:
    default_flags = get_subprocess_creation_flags()

    if "creationflags" in kwargs:
        kwargs["creationflags"] = kwargs["creationflags"] | default_flags
    elif default_flags:
        kwargs["creationflags"] = default_flags

    # Child processes must not read from the invoking terminal
    if "stdin" not in kwargs:
        kwargs["stdin"] = subprocess.DEVNULL

    return kwargs


def safe_run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
    """Execute subprocess.run with platform-specific flags.

    Automatically applies CREATE_NO_WINDOW on Windows and stdin=DEVNULL unless
    the caller passes its own values.

    Args:
        cmd: Command and arguments (same as subprocess.run)
        **kwargs: Additional arguments passed to subprocess.run

    Returns:
        CompletedProcess result from subprocess.run
    """
    return subprocess.run(cmd, **_apply_defaults(kwargs))


def safe_popen(cmd: list[str], **kwargs: Any) -> subprocess.Popen:
    """Execute subprocess.Popen with platform-specific flags.

    Similar to safe_run() but returns the process handle for streaming output
    from long-running tool invocations.

    Args:
        cmd: Command and arguments (same as subprocess.Popen)
        **kwargs: Additional arguments passed to subprocess.Popen

    Returns:
        Popen process handle
    """
    return subprocess.Popen(cmd, **_apply_defaults(kwargs))


def kill_process_tree(pid: int, timeout: float = 5.0) -> int:
    """Terminate a process and all of its descendants.

    Compilers spawn their own children (linkers, build scripts, test
    binaries); killing only the direct child leaves those running after a
    cancelled build.

    Args:
        pid: Root process id
        timeout: Seconds to wait for graceful termination before killing

    Returns:
        Number of processes that were signalled
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    procs = root.children(recursive=True) + [root]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            logger.debug("Killing unresponsive process %s", proc.pid)
            proc.kill()
        except psutil.NoSuchProcess:
            continue

    return len(procs)

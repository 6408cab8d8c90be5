"""Error taxonomy for hermbuild.

Every stage failure is raised as one of these typed exceptions and propagates
unchanged to the invocation boundary (the CLI), which reports the failing
stage and kind and maps it to an exit code.

Hierarchy:
    HermbuildError
    ├── ConfigError             invalid hermbuild.ini or environment
    ├── SelectionError          source root (or a selected file) unreadable
    ├── ToolchainUnavailable    channel/components cannot be located
    ├── DependencyBuildFailed   deps-only build failed (never cached)
    ├── BuildError              package build failed at compile or test stage
    ├── CheckFailure            a verification check failed
    ├── CyclicDependencyError   stage graph contains a cycle
    └── GraphCancelledError     evaluation cancelled before completion
"""

from enum import Enum


class BuildStage(Enum):
    """Stage of the package build that produced a BuildError."""

    COMPILE = "compile"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


class HermbuildError(Exception):
    """Base class for all hermbuild errors."""

    pass


class ConfigError(HermbuildError):
    """Raised when the project configuration is invalid."""

    pass


class SelectionError(HermbuildError):
    """Raised when the source root cannot be read."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class ToolchainUnavailable(HermbuildError):
    """Raised when a requested toolchain channel or component cannot be located."""

    def __init__(self, channel: str, message: str, missing: tuple[str, ...] = ()) -> None:
        super().__init__(f"Toolchain '{channel}' unavailable: {message}")
        self.channel = channel
        self.missing = missing


class _ToolFailure(HermbuildError):
    """Shared behaviour for failures carrying captured tool output."""

    _TAIL_LINES = 40

    def __init__(self, message: str, tool_output: str = "") -> None:
        super().__init__(message)
        self.tool_output = tool_output

    def output_tail(self) -> str:
        """Return the last lines of the captured tool output."""
        lines = self.tool_output.splitlines()
        return "\n".join(lines[-self._TAIL_LINES :])


class DependencyBuildFailed(_ToolFailure):
    """Raised when the dependencies-only build fails.

    Fatal for the current invocation. The cache is left untouched.
    """

    def __init__(self, tool_output: str, returncode: int | None = None) -> None:
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(f"Dependency build failed{detail}", tool_output)
        self.returncode = returncode


class BuildError(_ToolFailure):
    """Raised when the full package build fails.

    Attributes:
        stage: BuildStage.COMPILE or BuildStage.TEST
        tool_output: Captured output of the failing tool invocation
    """

    def __init__(self, stage: BuildStage, message: str, tool_output: str = "") -> None:
        super().__init__(f"Package {stage.value} failed: {message}", tool_output)
        self.stage = stage


class CheckFailure(HermbuildError):
    """Raised when one or more verification checks failed."""

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"Check '{kind}' failed: {reason}")
        self.kind = kind
        self.reason = reason


class CyclicDependencyError(HermbuildError, ValueError):
    """Raised when the stage graph contains a cycle."""

    pass


class GraphCancelledError(HermbuildError):
    """Raised when graph evaluation is cancelled via Ctrl-C or cancel()."""

    pass

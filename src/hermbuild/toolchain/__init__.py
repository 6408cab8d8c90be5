"""Toolchain resolution, acquisition and tool invocation."""

from .resolver import Toolchain, ToolchainComponent, ToolchainResolver
from .runner import SubprocessToolRunner, ToolInvocation, ToolResult, ToolRunner, invoke

__all__ = [
    "SubprocessToolRunner",
    "ToolInvocation",
    "ToolResult",
    "ToolRunner",
    "Toolchain",
    "ToolchainComponent",
    "ToolchainResolver",
    "invoke",
]

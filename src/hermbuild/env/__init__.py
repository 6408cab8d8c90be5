"""Build and development-shell environments."""

from .common import build_environment, input_variables, render_command
from .shell import EnvironmentComposer, EnvironmentDescriptor

__all__ = [
    "EnvironmentComposer",
    "EnvironmentDescriptor",
    "build_environment",
    "input_variables",
    "render_command",
]

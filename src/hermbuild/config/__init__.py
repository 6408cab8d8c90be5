"""Project configuration (hermbuild.ini) and per-invocation settings."""

from .ini_parser import CONFIG_FILENAME, ProjectConfigParser, load_project_config
from .invocation import InvocationConfig, configure_logging, parse_log_spec
from .model import (
    BuildSettings,
    CheckSettings,
    InputSettings,
    LinkerRule,
    PackageSettings,
    ProjectConfig,
    ShellSettings,
    SourceSettings,
    ToolchainSettings,
)

__all__ = [
    "CONFIG_FILENAME",
    "BuildSettings",
    "CheckSettings",
    "InputSettings",
    "InvocationConfig",
    "LinkerRule",
    "PackageSettings",
    "ProjectConfig",
    "ProjectConfigParser",
    "ShellSettings",
    "SourceSettings",
    "ToolchainSettings",
    "configure_logging",
    "load_project_config",
    "parse_log_spec",
]

"""
Per-invocation settings read from the process environment.

The environment is read exactly once, in InvocationConfig.from_env(), and the
resulting object is threaded through every stage. Nothing else in hermbuild
consults os.environ directly.

Variables:
    HERMBUILD_TARGET_DIR      Redirects all build output (cache, workspaces)
    HERMBUILD_LOG             Log levels, e.g. "debug" or "hermbuild=info,hermbuild.graph=debug"
    HERMBUILD_TOOLCHAINS_DIR  Toolchain store
    HERMBUILD_NO_TUI          Disable the live progress table when set to a truthy value
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from hermbuild.errors import ConfigError

TARGET_DIR_ENV = "HERMBUILD_TARGET_DIR"
LOG_ENV = "HERMBUILD_LOG"
TOOLCHAINS_DIR_ENV = "HERMBUILD_TOOLCHAINS_DIR"
NO_TUI_ENV = "HERMBUILD_NO_TUI"

DEFAULT_TARGET_DIRNAME = ".hermbuild"

ROOT_LOGGER = "hermbuild"

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 10,
}

_TRUTHY = {"1", "true", "yes", "on"}


def default_toolchains_dir() -> Path:
    return Path.home() / ".hermbuild" / "toolchains"


@dataclass(frozen=True)
class InvocationConfig:
    """Settings for one hermbuild invocation.

    Attributes:
        project_dir: Project root
        target_dir: Root of all build output (artifact cache and workspaces)
        toolchains_dir: Local toolchain store
        log_spec: Raw HERMBUILD_LOG value
        no_tui: Disable the rich progress display
        environ: Snapshot of the inherited environment
    """

    project_dir: Path
    target_dir: Path
    toolchains_dir: Path
    log_spec: str = ""
    no_tui: bool = False
    environ: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, project_dir: Path, environ: Optional[Mapping[str, str]] = None) -> "InvocationConfig":
        """Build the invocation config from an environment mapping.

        A relative HERMBUILD_TARGET_DIR is resolved against the project dir.
        """
        env = dict(os.environ if environ is None else environ)
        project_dir = Path(project_dir).resolve()

        target = env.get(TARGET_DIR_ENV, "").strip()
        if target:
            target_dir = Path(target).expanduser()
            if not target_dir.is_absolute():
                target_dir = project_dir / target_dir
        else:
            target_dir = project_dir / DEFAULT_TARGET_DIRNAME

        toolchains = env.get(TOOLCHAINS_DIR_ENV, "").strip()
        toolchains_dir = Path(toolchains).expanduser() if toolchains else default_toolchains_dir()

        log_spec = env.get(LOG_ENV, "").strip()
        # Validate early so a typo fails before any stage runs
        parse_log_spec(log_spec)

        return cls(
            project_dir=project_dir,
            target_dir=target_dir.resolve(),
            toolchains_dir=toolchains_dir.resolve(),
            log_spec=log_spec,
            no_tui=env.get(NO_TUI_ENV, "").strip().lower() in _TRUTHY,
            environ=env,
        )

    @property
    def cache_dir(self) -> Path:
        return self.target_dir / "cache"

    @property
    def work_dir(self) -> Path:
        return self.target_dir / "work"

    def excluded_source_paths(self) -> tuple[str, ...]:
        """Relative paths of build output that lives inside the project tree."""
        try:
            rel = self.target_dir.relative_to(self.project_dir)
        except ValueError:
            return ()
        return (rel.as_posix(),)


def parse_log_spec(spec: str) -> dict[str, int]:
    """Parse a HERMBUILD_LOG value into {logger name: level}.

    A bare level applies to the "hermbuild" namespace. Names outside that
    namespace are rejected.

    Raises:
        ConfigError: On an unknown level or a foreign logger name.
    """
    levels: dict[str, int] = {}
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, level_name = item.rpartition("=")
        if not sep:
            name = ROOT_LOGGER
        name = name.strip()
        level_name = level_name.strip().lower()
        if level_name not in _LEVELS:
            raise ConfigError(f"Invalid level '{level_name}' in {LOG_ENV}")
        if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
            raise ConfigError(f"{LOG_ENV} may only configure '{ROOT_LOGGER}' loggers, got '{name}'")
        levels[name] = _LEVELS[level_name]
    return levels


def configure_logging(log_spec: str = "", verbose: bool = False) -> None:
    """Attach a stderr handler to the hermbuild logger namespace.

    --verbose forces debug on the whole namespace; otherwise HERMBUILD_LOG
    decides and warnings are the default.
    """
    root = logging.getLogger(ROOT_LOGGER)
    levels = parse_log_spec(log_spec)
    if verbose:
        levels[ROOT_LOGGER] = logging.DEBUG

    root.setLevel(levels.get(ROOT_LOGGER, logging.WARNING))
    for name, level in levels.items():
        if name != ROOT_LOGGER:
            logging.getLogger(name).setLevel(level)

    if not any(getattr(h, "_hermbuild", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        handler._hermbuild = True  # type: ignore[attr-defined]
        root.addHandler(handler)

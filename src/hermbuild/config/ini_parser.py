"""
hermbuild.ini parser.

Example:

    [package]
    name = lunatic
    run_tests = true

    [toolchain]
    channel = stable
    components = rust-src, rust-analyzer, clippy

    [sources]
    default_roles = cargo
    aux_patterns = .*\\.wat

    [build]
    artifacts = release/lunatic
    env =
        CARGO_PROFILE_RELEASE_LTO=thin

    [inputs]
    native = pkg-config
    runtime = openssl, sqlite

    [inputs:os=darwin]
    runtime = Security, SystemConfiguration

    [shell]
    tools = cargo-nextest, cargo-deny, cargo-watch, mold, clang, git-cliff
    env =
        CARGO_INCREMENTAL=1
        RUST_LOG=lunatic=debug

    [linker:x86_64-linux]
    linker = clang
    flags = -C link-arg=-fuse-ld=mold

List values accept commas and/or newlines. Commands are split with shlex.
Environment blocks hold one NAME=VALUE per line; under [shell], a bare
"NAME=" sets an empty value and listing a name in "unset" clears it.
"""

import configparser
import logging
import shlex
from pathlib import Path
from typing import Optional

from hermbuild.errors import ConfigError
from hermbuild.platform.profiles import DEFAULT_SYSTEMS, InputExtras, PlatformKey, parse_condition

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

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "hermbuild.ini"

_KNOWN_SECTIONS = {"package", "toolchain", "sources", "build", "checks", "inputs", "shell", "platforms", "deps-stubs"}
_PREFIXED_SECTIONS = ("inputs:", "linker:")


def split_list(value: str) -> tuple[str, ...]:
    """Split a comma- and/or newline-separated list, dropping empty items."""
    items = []
    for line in value.splitlines():
        for part in line.split(","):
            part = part.strip()
            if part:
                items.append(part)
    return tuple(items)


def split_patterns(value: str) -> tuple[str, ...]:
    """Split a newline-separated list of regexes (commas are part of a regex)."""
    return tuple(line.strip() for line in value.splitlines() if line.strip())


def split_command(value: str, option: str) -> tuple[str, ...]:
    try:
        argv = tuple(shlex.split(value))
    except ValueError as e:
        raise ConfigError(f"Invalid command for '{option}': {e}") from e
    if not argv:
        raise ConfigError(f"Command '{option}' is empty")
    return argv


def parse_env_block(value: str, option: str) -> tuple[tuple[str, str], ...]:
    """Parse NAME=VALUE lines."""
    pairs = []
    for line in value.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        name, sep, val = line.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigError(f"Invalid environment entry in '{option}': {line!r} (expected NAME=VALUE)")
        pairs.append((name, val.strip()))
    return tuple(pairs)


def _get_bool(section: configparser.SectionProxy, option: str, default: bool) -> bool:
    try:
        return section.getboolean(option, fallback=default)
    except ValueError as e:
        raise ConfigError(f"[{section.name}] {option}: {e}") from e


class ProjectConfigParser:
    """Reads hermbuild.ini into a ProjectConfig."""

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self._parser = configparser.ConfigParser(interpolation=None)
        # Preserve case: env var names and stub paths are case-sensitive
        self._parser.optionxform = str  # type: ignore[assignment,method-assign]

    def parse(self) -> ProjectConfig:
        """Parse the file.

        Raises:
            ConfigError: If the file is missing, malformed or inconsistent.
        """
        if not self.config_path.is_file():
            raise ConfigError(f"{CONFIG_FILENAME} not found: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                self._parser.read_file(f)
        except (configparser.Error, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to parse {self.config_path}: {e}") from e

        self._warn_unknown_sections()

        return ProjectConfig(
            root=self.config_path.parent.resolve(),
            package=self._package(),
            toolchain=self._toolchain(),
            sources=self._sources(),
            build=self._build(),
            checks=self._checks(),
            inputs=self._inputs(),
            shell=self._shell(),
            systems=self._systems(),
        )

    def _section(self, name: str) -> Optional[configparser.SectionProxy]:
        return self._parser[name] if self._parser.has_section(name) else None

    def _warn_unknown_sections(self) -> None:
        for name in self._parser.sections():
            if name in _KNOWN_SECTIONS or name.startswith(_PREFIXED_SECTIONS):
                continue
            logger.warning(f"Ignoring unknown section [{name}] in {self.config_path.name}")

    def _package(self) -> PackageSettings:
        section = self._section("package")
        if section is None or not section.get("name", "").strip():
            raise ConfigError("[package] name is required")
        return PackageSettings(
            name=section["name"].strip(),
            program=section.get("program", "").strip(),
            run_tests=_get_bool(section, "run_tests", True),
        )

    def _toolchain(self) -> ToolchainSettings:
        section = self._section("toolchain")
        defaults = ToolchainSettings()
        if section is None:
            return defaults
        components = split_list(section["components"]) if "components" in section else defaults.components
        return ToolchainSettings(
            channel=section.get("channel", defaults.channel).strip(),
            components=components,
            dist_url=section.get("dist_url", "").strip() or None,
        )

    def _sources(self) -> SourceSettings:
        section = self._section("sources")
        defaults = SourceSettings()
        if section is None:
            return defaults
        return SourceSettings(
            default_roles=split_list(section["default_roles"]) if "default_roles" in section else defaults.default_roles,
            aux_patterns=split_patterns(section.get("aux_patterns", "")),
            manifest_patterns=(split_patterns(section["manifest_patterns"]) if "manifest_patterns" in section else defaults.manifest_patterns),
        )

    def _build(self) -> BuildSettings:
        section = self._section("build")
        defaults = BuildSettings()
        stubs = self._stubs(defaults.stubs)
        if section is None:
            return BuildSettings(stubs=stubs)

        def command(option: str, fallback: tuple[str, ...]) -> tuple[str, ...]:
            return split_command(section[option], option) if option in section else fallback

        return BuildSettings(
            deps_command=command("deps_command", defaults.deps_command),
            build_command=command("build_command", defaults.build_command),
            test_command=command("test_command", defaults.test_command),
            target_dir_env=section.get("target_dir_env", defaults.target_dir_env).strip(),
            build_env=parse_env_block(section["env"], "build.env") if "env" in section else defaults.build_env,
            artifacts=split_list(section.get("artifacts", "")),
            stubs=stubs,
            stub_anchor=section.get("stub_anchor", defaults.stub_anchor).strip(),
        )

    def _stubs(self, fallback: tuple[tuple[str, str], ...]) -> tuple[tuple[str, str], ...]:
        section = self._section("deps-stubs")
        if section is None:
            return fallback
        stubs = []
        for path, content in section.items():
            content = content.strip()
            stubs.append((path, f"{content}\n" if content else ""))
        return tuple(stubs)

    def _checks(self) -> CheckSettings:
        section = self._section("checks")
        defaults = CheckSettings()
        if section is None:
            return defaults

        def command(option: str, fallback: tuple[str, ...]) -> tuple[str, ...]:
            return split_command(section[option], option) if option in section else fallback

        return CheckSettings(
            lint_command=command("lint_command", defaults.lint_command),
            format_command=command("format_command", defaults.format_command),
            formatter_command=command("formatter_command", defaults.formatter_command),
            lint_warning_pattern=section.get("lint_warning_pattern", defaults.lint_warning_pattern).strip(),
        )

    def _inputs(self) -> InputSettings:
        base = self._section("inputs")
        extras = []
        for name in self._parser.sections():
            if not name.startswith("inputs:"):
                continue
            section = self._parser[name]
            extras.append(
                InputExtras(
                    condition=parse_condition(name[len("inputs:") :]),
                    native=split_list(section.get("native", "")),
                    runtime=split_list(section.get("runtime", "")),
                )
            )
        return InputSettings(
            native=split_list(base.get("native", "")) if base is not None else (),
            runtime=split_list(base.get("runtime", "")) if base is not None else (),
            extras=tuple(extras),
        )

    def _shell(self) -> ShellSettings:
        section = self._section("shell")
        defaults = ShellSettings()

        rules = []
        for name in self._parser.sections():
            if not name.startswith("linker:"):
                continue
            rule_section = self._parser[name]
            linker = rule_section.get("linker", "").strip()
            if not linker:
                raise ConfigError(f"[{name}] linker is required")
            rules.append(
                LinkerRule(
                    key=PlatformKey.parse(name[len("linker:") :]),
                    linker=linker,
                    flags=rule_section.get("flags", "").strip(),
                )
            )

        if section is None:
            return ShellSettings(linker_rules=tuple(rules))

        env: list[tuple[str, Optional[str]]] = list(parse_env_block(section.get("env", ""), "shell.env"))
        for name in split_list(section.get("unset", "")):
            env.append((name, None))

        return ShellSettings(
            tools=split_list(section.get("tools", "")),
            env=tuple(env),
            linker_rules=tuple(rules),
            linker_env=section.get("linker_env", defaults.linker_env).strip(),
            flags_env=section.get("flags_env", defaults.flags_env).strip(),
        )

    def _systems(self) -> tuple[PlatformKey, ...]:
        section = self._section("platforms")
        if section is None or "systems" not in section:
            return DEFAULT_SYSTEMS
        systems = tuple(PlatformKey.parse(s) for s in split_list(section["systems"]))
        if not systems:
            raise ConfigError("[platforms] systems must not be empty")
        return systems


def load_project_config(project_dir: Path) -> ProjectConfig:
    """Load hermbuild.ini from a project directory."""
    return ProjectConfigParser(Path(project_dir) / CONFIG_FILENAME).parse()

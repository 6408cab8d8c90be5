"""
Development shell composition.

The shell carries the same toolchain, the same input sets and the same
build-affecting variables as the build path, then adds what only matters to
interactive work: auxiliary tools, per-platform linker selection and user
overrides. None of these participate in artifact keys.

Variables are applied in order:
    1. toolchain/input variables (PATH, nativeBuildInputs, buildInputs)
    2. build-affecting variables (shared with the builders)
    3. linker rules whose platform equals the shell's platform
    4. overrides, each of which sets a value or clears the variable
"""

import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from hermbuild.config.model import BuildSettings, LinkerRule, ShellSettings
from hermbuild.platform.profiles import PlatformProfile
from hermbuild.toolchain.resolver import Toolchain

from .common import input_variables

logger = logging.getLogger(__name__)

EnvEntry = tuple[str, Optional[str]]


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """Everything needed to enter a development shell.

    Attributes:
        toolchain: The toolchain the build path uses
        profile: The platform profile the build path uses
        tools: Auxiliary tools expected on PATH
        env: Ordered (name, value) entries; a None value clears the variable
    """

    toolchain: Toolchain
    profile: PlatformProfile
    tools: tuple[str, ...]
    env: tuple[EnvEntry, ...]

    def as_dict(self) -> dict[str, Optional[str]]:
        """Final value of every variable the shell touches (None if cleared)."""
        result: dict[str, Optional[str]] = {}
        for name, value in self.env:
            result[name] = value
        return result

    def apply(self, base_env: Mapping[str, str]) -> dict[str, str]:
        """Apply the entries on top of a concrete environment."""
        env = dict(base_env)
        for name, value in self.env:
            if value is None:
                env.pop(name, None)
            else:
                env[name] = value
        return env

    def to_shell_exports(self) -> str:
        """Render as POSIX shell `export`/`unset` lines."""
        lines = []
        for name, value in self.as_dict().items():
            if value is None:
                lines.append(f"unset {name}")
            else:
                lines.append(f"export {name}={shlex.quote(value)}")
        return "\n".join(lines) + "\n"

    def missing_tools(self) -> list[str]:
        """Auxiliary tools not found on the shell's PATH."""
        path = self.as_dict().get("PATH") or ""
        return [tool for tool in self.tools if shutil.which(tool, path=path) is None]


def _triple_var(template: str, profile: PlatformProfile) -> str:
    triple = profile.key.target_triple.upper().replace("-", "_")
    return template.format(triple=triple)


class EnvironmentComposer:
    """Builds EnvironmentDescriptors from the shared toolchain and profiles.

    Args:
        shell: Shell settings (tools, overrides, linker rules)
        build: Build settings whose variables the shell mirrors
    """

    def __init__(self, shell: ShellSettings, build: BuildSettings) -> None:
        self.shell = shell
        self.build = build

    def linker_entries(self, profile: PlatformProfile) -> list[EnvEntry]:
        """Linker variables for rules matching the profile's exact key."""
        entries: list[EnvEntry] = []
        rules: Sequence[LinkerRule] = [r for r in self.shell.linker_rules if r.key == profile.key]
        for rule in rules:
            entries.append((_triple_var(self.shell.linker_env, profile), rule.linker))
            if rule.flags:
                entries.append((_triple_var(self.shell.flags_env, profile), rule.flags))
        return entries

    def compose_shell(
        self,
        toolchain: Toolchain,
        profile: PlatformProfile,
        extra_tools: Optional[Sequence[str]] = None,
        env_overrides: Optional[Sequence[EnvEntry]] = None,
        inherited_path: str = "",
    ) -> EnvironmentDescriptor:
        """Compose the development shell for one platform.

        Args:
            toolchain: Toolchain shared with the build path
            profile: Profile shared with the build path
            extra_tools: Auxiliary tools (defaults to the configured list)
            env_overrides: Overrides applied last (defaults to the configured ones)
            inherited_path: PATH appended after the toolchain's bin dirs
        """
        tools = tuple(self.shell.tools if extra_tools is None else extra_tools)
        overrides = tuple(self.shell.env if env_overrides is None else env_overrides)

        entries: list[EnvEntry] = list(input_variables(toolchain, profile, inherited_path or os.defpath).items())
        entries.extend(self.build.build_env)
        entries.extend(self.linker_entries(profile))
        entries.extend(overrides)

        descriptor = EnvironmentDescriptor(toolchain=toolchain, profile=profile, tools=tools, env=tuple(entries))
        logger.debug("Composed shell for %s with %d variables", profile.key, len(descriptor.as_dict()))
        return descriptor

"""
Environment shared by the build path and the development shell.

Both the builders and the EnvironmentComposer derive their variables from the
same Toolchain and PlatformProfile objects through input_variables(), so the
shell can never drift from what CI builds with.
"""

import os
from pathlib import Path
from typing import Mapping, Sequence

from hermbuild.config.model import BuildSettings
from hermbuild.platform.profiles import PlatformProfile
from hermbuild.toolchain.resolver import Toolchain

NATIVE_INPUTS_VAR = "nativeBuildInputs"
RUNTIME_INPUTS_VAR = "buildInputs"
SYSTEM_VAR = "HERMBUILD_SYSTEM"

# Inherited by tool processes; everything else is dropped for reproducibility
PASSTHROUGH_VARS = ("HOME", "USER", "LANG", "LC_ALL", "TMPDIR", "TEMP", "TMP", "SYSTEMROOT", "TERM")


def input_variables(toolchain: Toolchain, profile: PlatformProfile, inherited_path: str = "") -> dict[str, str]:
    """Variables describing the toolchain and the profile's input sets."""
    return {
        "PATH": toolchain.path_env(inherited_path),
        NATIVE_INPUTS_VAR: " ".join(profile.native_inputs),
        RUNTIME_INPUTS_VAR: " ".join(profile.runtime_inputs),
        SYSTEM_VAR: str(profile.key),
    }


def render_command(template: Sequence[str], profile: PlatformProfile) -> list[str]:
    """Substitute {target} and {system} in a command template."""
    return [arg.replace("{target}", profile.key.target_triple).replace("{system}", str(profile.key)) for arg in template]


def build_environment(
    environ: Mapping[str, str],
    toolchain: Toolchain,
    profile: PlatformProfile,
    settings: BuildSettings,
    target_dir: Path,
) -> dict[str, str]:
    """Process environment for a build or check tool invocation.

    Args:
        environ: Inherited environment snapshot
        toolchain: Resolved toolchain
        profile: Platform profile being built
        settings: Build settings (build-affecting variables)
        target_dir: Output directory handed to the tool

    Returns:
        The complete environment mapping
    """
    env = {name: environ[name] for name in PASSTHROUGH_VARS if name in environ}
    env.update(input_variables(toolchain, profile, environ.get("PATH", os.defpath)))
    env.update(dict(settings.build_env))
    env[settings.target_dir_env] = str(target_dir)
    return env

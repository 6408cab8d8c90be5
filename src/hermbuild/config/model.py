"""
Type-safe project configuration models.

hermbuild.ini is parsed into these frozen dataclasses once per invocation and
threaded through every stage; no stage reads the INI file or the process
environment on its own.

Defaults describe a cargo workspace: the dependency-only build compiles the
lock file's crates against stub sources, the full build runs the release
build and the test suite, lint denies every warning across examples, tests
and benches, and the dev shell adds the mold/clang linker pairing on Linux.
"""

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from hermbuild.platform.profiles import (
    DEFAULT_SYSTEMS,
    InputComposer,
    InputExtras,
    PlatformKey,
)
from hermbuild.source.selector import DEFAULT_MANIFEST_PATTERNS, IncludeRules

EnvPairs = tuple[tuple[str, str], ...]

DEFAULT_BUILD_ENV: EnvPairs = (("CARGO_PROFILE_RELEASE_LTO", "thin"),)

DEFAULT_STUBS: EnvPairs = (
    ("src/lib.rs", ""),
    ("src/main.rs", "fn main() {}\n"),
)


@dataclass(frozen=True)
class PackageSettings:
    """[package] section.

    Attributes:
        name: Package name
        program: Executable exposed as the app handle (defaults to name)
        run_tests: Run the test suite as part of the package build
    """

    name: str
    program: str = ""
    run_tests: bool = True

    @property
    def program_name(self) -> str:
        return self.program or self.name


@dataclass(frozen=True)
class ToolchainSettings:
    """[toolchain] section."""

    channel: str = "stable"
    components: tuple[str, ...] = ("rust-src", "rust-analyzer", "clippy")
    dist_url: Optional[str] = None


@dataclass(frozen=True)
class SourceSettings:
    """[sources] section.

    Attributes:
        default_roles: Role predicates for build-manifest sources
        aux_patterns: Extra regexes pulled in regardless of role
        manifest_patterns: Regexes naming the dependency-declaration files
    """

    default_roles: tuple[str, ...] = ("cargo",)
    aux_patterns: tuple[str, ...] = ()
    manifest_patterns: tuple[str, ...] = DEFAULT_MANIFEST_PATTERNS

    def include_rules(self, exclude_paths: tuple[str, ...] = ()) -> IncludeRules:
        return IncludeRules(
            default_roles=self.default_roles,
            aux_patterns=self.aux_patterns,
            exclude_paths=exclude_paths,
        )


@dataclass(frozen=True)
class BuildSettings:
    """[build] section: everything that shapes a build artifact.

    Commands are argv templates. "{target}" and "{system}" are replaced with
    the platform's target triple and key before invocation.

    Attributes:
        deps_command: Dependency-only build command
        build_command: Full package build command
        test_command: Test command run after a successful build
        target_dir_env: Variable that redirects the tool's output directory
        build_env: Build-affecting variables shared by deps and full builds
        artifacts: Glob patterns (relative to the target dir) to publish
        stubs: Files written next to each stub anchor in the deps workspace
        stub_anchor: Manifest file name marking a crate root
    """

    deps_command: tuple[str, ...] = ("cargo", "build", "--release", "--locked")
    build_command: tuple[str, ...] = ("cargo", "build", "--release", "--locked")
    test_command: tuple[str, ...] = ("cargo", "test", "--release", "--locked")
    target_dir_env: str = "CARGO_TARGET_DIR"
    build_env: EnvPairs = DEFAULT_BUILD_ENV
    artifacts: tuple[str, ...] = ()
    stubs: EnvPairs = DEFAULT_STUBS
    stub_anchor: str = "Cargo.toml"

    @property
    def identity(self) -> str:
        """Digest of every setting that influences artifact content."""
        payload = json.dumps(
            {
                "deps_command": list(self.deps_command),
                "build_command": list(self.build_command),
                "test_command": list(self.test_command),
                "target_dir_env": self.target_dir_env,
                "build_env": [list(p) for p in self.build_env],
                "artifacts": list(self.artifacts),
                "stubs": [list(p) for p in self.stubs],
                "stub_anchor": self.stub_anchor,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CheckSettings:
    """[checks] section."""

    lint_command: tuple[str, ...] = (
        "cargo",
        "clippy",
        "--release",
        "--locked",
        "--examples",
        "--tests",
        "--benches",
        "--",
        "-D",
        "warnings",
    )
    format_command: tuple[str, ...] = ("cargo", "fmt", "--all", "--", "--check")
    formatter_command: tuple[str, ...] = ("cargo", "fmt", "--all")
    lint_warning_pattern: str = r"^warning(\[[^\]]*\])?:"


@dataclass(frozen=True)
class LinkerRule:
    """Alternate linker for one platform.

    Applied to a shell only when its key equals the shell's platform key;
    every other platform keeps the toolchain's built-in linker.
    """

    key: PlatformKey
    linker: str
    flags: str = ""


@dataclass(frozen=True)
class ShellSettings:
    """[shell] and [linker:<system>] sections.

    Attributes:
        tools: Auxiliary tools expected in the development shell
        env: Overrides applied last; a None value clears the variable
        linker_rules: Per-platform alternate linker selection
        linker_env: Variable name template for the linker ({triple} upper-cased)
        flags_env: Variable name template for the extra linker flags
    """

    tools: tuple[str, ...] = ()
    env: tuple[tuple[str, Optional[str]], ...] = ()
    linker_rules: tuple[LinkerRule, ...] = ()
    linker_env: str = "CARGO_TARGET_{triple}_LINKER"
    flags_env: str = "CARGO_TARGET_{triple}_RUSTFLAGS"


@dataclass(frozen=True)
class InputSettings:
    """[inputs] and [inputs:<condition>] sections."""

    native: tuple[str, ...] = ()
    runtime: tuple[str, ...] = ()
    extras: tuple[InputExtras, ...] = ()

    def composer(self) -> InputComposer:
        return InputComposer(self.native, self.runtime, self.extras)


@dataclass(frozen=True)
class ProjectConfig:
    """Complete project configuration.

    Attributes:
        root: Project root (directory containing hermbuild.ini)
        package: Package identity and app handle
        toolchain: Channel and optional components
        sources: Inclusion rules and manifest predicate
        build: Build commands and build-affecting environment
        checks: Lint/format commands
        inputs: Base and platform-specific inputs
        shell: Development shell tools, overrides and linker rules
        systems: Platforms evaluated by --all-systems
    """

    root: Path
    package: PackageSettings
    toolchain: ToolchainSettings = field(default_factory=ToolchainSettings)
    sources: SourceSettings = field(default_factory=SourceSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    checks: CheckSettings = field(default_factory=CheckSettings)
    inputs: InputSettings = field(default_factory=InputSettings)
    shell: ShellSettings = field(default_factory=ShellSettings)
    systems: tuple[PlatformKey, ...] = DEFAULT_SYSTEMS

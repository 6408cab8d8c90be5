"""Tests for development shell composition."""

import os

import pytest

from conftest import ARM_LINUX, DARWIN, LINUX
from hermbuild.config.model import BuildSettings, LinkerRule, ShellSettings
from hermbuild.env.common import build_environment, render_command
from hermbuild.env.shell import EnvironmentComposer, EnvironmentDescriptor
from hermbuild.platform.profiles import InputComposer, InputExtras, OsCondition

SHELL = ShellSettings(
    tools=("cargo-nextest", "mold"),
    env=(("CARGO_INCREMENTAL", "1"), ("RUST_LOG", "lunatic=debug"), ("CARGO_PROFILE_RELEASE_LTO", None)),
    linker_rules=(LinkerRule(LINUX, "clang", "-C link-arg=-fuse-ld=mold"),),
)


@pytest.fixture
def inputs():
    return InputComposer(("pkg-config",), ("openssl", "sqlite"), (InputExtras(OsCondition("darwin"), runtime=("Security",)),))


@pytest.fixture
def composer():
    return EnvironmentComposer(SHELL, BuildSettings())


class TestEnvironmentComposer:
    """Test EnvironmentComposer."""

    def test_shell_shares_toolchain_and_profile(self, composer, toolchain, inputs):
        """The shell's PATH and input sets match what the builders use."""
        profile = inputs.compose(LINUX)
        shell = composer.compose_shell(toolchain, profile, inherited_path="/usr/bin")
        build_env = build_environment({"PATH": "/usr/bin"}, toolchain, profile, BuildSettings(), "/tmp/target")

        env = shell.as_dict()
        for name in ("PATH", "nativeBuildInputs", "buildInputs", "HERMBUILD_SYSTEM"):
            assert env[name] == build_env[name]
        assert shell.toolchain is toolchain
        assert shell.profile is profile

    def test_linker_rule_applies_on_exact_key_only(self, composer, toolchain, inputs):
        """The mold/clang pairing is set for x86_64-linux and nowhere else."""
        linux = composer.compose_shell(toolchain, inputs.compose(LINUX)).as_dict()
        arm = composer.compose_shell(toolchain, inputs.compose(ARM_LINUX)).as_dict()
        mac = composer.compose_shell(toolchain, inputs.compose(DARWIN)).as_dict()

        assert linux["CARGO_TARGET_X86_64_UNKNOWN_LINUX_GNU_LINKER"] == "clang"
        assert linux["CARGO_TARGET_X86_64_UNKNOWN_LINUX_GNU_RUSTFLAGS"] == "-C link-arg=-fuse-ld=mold"
        assert not any(name.endswith("_LINKER") for name in arm)
        assert not any(name.endswith("_LINKER") for name in mac)

    def test_overrides_apply_last(self, composer, toolchain, inputs):
        """Overrides can set and clear variables, including build-affecting ones."""
        env = composer.compose_shell(toolchain, inputs.compose(LINUX)).as_dict()

        assert env["CARGO_INCREMENTAL"] == "1"
        assert env["RUST_LOG"] == "lunatic=debug"
        assert env["CARGO_PROFILE_RELEASE_LTO"] is None

    def test_darwin_inputs(self, composer, toolchain, inputs):
        """Platform extras flow into the shell's input variables."""
        env = composer.compose_shell(toolchain, inputs.compose(DARWIN)).as_dict()
        assert env["buildInputs"] == "openssl sqlite Security"

    def test_explicit_tools_and_overrides(self, composer, toolchain, inputs):
        """Arguments replace the configured tools and overrides."""
        shell = composer.compose_shell(toolchain, inputs.compose(LINUX), extra_tools=["just"], env_overrides=[("EDITOR", "vi")])
        assert shell.tools == ("just",)
        assert shell.as_dict()["EDITOR"] == "vi"
        assert "RUST_LOG" not in shell.as_dict()


class TestEnvironmentDescriptor:
    """Test applying and rendering a composed shell."""

    def test_apply_sets_and_clears(self, composer, toolchain, inputs):
        """apply() overlays the entries on a base environment."""
        shell = composer.compose_shell(toolchain, inputs.compose(LINUX))
        env = shell.apply({"HOME": "/home/dev", "CARGO_PROFILE_RELEASE_LTO": "fat"})

        assert env["HOME"] == "/home/dev"
        assert "CARGO_PROFILE_RELEASE_LTO" not in env
        assert env["CARGO_INCREMENTAL"] == "1"

    def test_shell_exports_are_quoted(self, toolchain, inputs):
        """Values with spaces are shell-quoted; cleared variables are unset."""
        descriptor = EnvironmentDescriptor(
            toolchain=toolchain,
            profile=inputs.compose(LINUX),
            tools=(),
            env=(("FLAGS", "-C link-arg=-fuse-ld=mold"), ("GONE", None)),
        )
        assert descriptor.to_shell_exports() == "export FLAGS='-C link-arg=-fuse-ld=mold'\nunset GONE\n"

    def test_missing_tools(self, composer, toolchain, inputs, tmp_path):
        """Tools not on the shell's PATH are reported."""
        shell = composer.compose_shell(toolchain, inputs.compose(LINUX), extra_tools=["rustc", "cargo-nextest"], inherited_path=str(tmp_path))
        assert shell.missing_tools() == ["cargo-nextest"]


def test_render_command_substitutes_target_and_system(inputs):
    """{target} and {system} expand to the profile's triple and key."""
    argv = render_command(["cargo", "build", "--target", "{target}", "--out=out/{system}"], inputs.compose(ARM_LINUX))
    assert argv == ["cargo", "build", "--target", "aarch64-unknown-linux-gnu", "--out=out/aarch64-linux"]


def test_build_environment_drops_unlisted_variables(toolchain, inputs, tmp_path):
    """Only whitelisted variables are inherited by tool processes."""
    env = build_environment(
        {"PATH": os.defpath, "HOME": "/home/dev", "RUSTFLAGS": "-C target-cpu=native", "AWS_SECRET": "x"},
        toolchain,
        inputs.compose(LINUX),
        BuildSettings(),
        tmp_path / "target",
    )
    assert env["HOME"] == "/home/dev"
    assert "RUSTFLAGS" not in env
    assert "AWS_SECRET" not in env
    assert env["CARGO_TARGET_DIR"] == str(tmp_path / "target")

"""Tests for the build orchestrator and its named outputs."""

import logging
import shutil
import subprocess
from pathlib import Path

import pytest

from conftest import ARM_LINUX, DARWIN, LINUX
from hermbuild.checks.aggregator import CheckKind, CheckStatus
from hermbuild.config.ini_parser import load_project_config
from hermbuild.errors import BuildError, DependencyBuildFailed, ToolchainUnavailable
from hermbuild.graph.models import StagePhase
from hermbuild.orchestrator import (
    BuildOrchestrator,
    check_stage,
    deps_stage,
    package_stage,
    profile_stage,
)
from hermbuild.toolchain.resolver import ToolchainResolver


class TestPackageOutputs:
    """Test package and app outputs."""

    def test_package(self, orchestrator, fake_runner):
        """package() builds dependencies then the package."""
        artifact = orchestrator.package(LINUX)

        assert artifact.files == ("bin/lunatic",)
        assert artifact.tested
        assert [i.label.split(":")[0] for i in fake_runner.invocations] == ["deps", "compile", "test"]

    def test_app(self, orchestrator):
        """app() points at the program inside the package artifact."""
        app = orchestrator.app(LINUX)

        assert app.program == "lunatic"
        assert app.path.is_file()
        assert app.argv(["--version"]) == [str(app.path), "--version"]

    def test_stages_are_memoized(self, orchestrator, fake_runner):
        """Asking for the package twice runs the tools once."""
        first = orchestrator.package(LINUX)
        second = orchestrator.package(LINUX)

        assert first is second
        assert len(fake_runner.calls("compile")) == 1

    def test_new_orchestrator_hits_cache(self, project, invocation, fake_runner):
        """A fresh invocation with identical inputs reuses both artifacts."""
        BuildOrchestrator(project, invocation, runner=fake_runner).package(LINUX)
        artifact = BuildOrchestrator(project, invocation, runner=fake_runner).package(LINUX)

        assert artifact.cached
        assert len(fake_runner.calls("deps")) == 1
        assert len(fake_runner.calls("compile")) == 1

    def test_systems_build_independently(self, orchestrator, fake_runner):
        """Each platform has its own dependency artifact."""
        linux = orchestrator.package(LINUX)
        arm = orchestrator.package(ARM_LINUX)

        assert linux.key != arm.key
        assert len(fake_runner.calls("deps")) == 2

    def test_dependency_failure_raises(self, orchestrator, fake_runner):
        """A failing deps build propagates as DependencyBuildFailed."""
        fake_runner.respond("deps", returncode=101, output="error: failed to select a version\n")
        with pytest.raises(DependencyBuildFailed):
            orchestrator.package(LINUX)

    def test_missing_toolchain(self, project, invocation, fake_runner, tmp_path):
        """An empty toolchain store with no dist server is ToolchainUnavailable."""
        orchestrator = BuildOrchestrator(project, invocation, runner=fake_runner, resolver=ToolchainResolver(tmp_path / "empty"))
        with pytest.raises(ToolchainUnavailable):
            orchestrator.package(LINUX)
        assert fake_runner.invocations == []


class TestChecks:
    """Test the checks output."""

    def test_all_checks_pass(self, orchestrator):
        """Lint, format, package-build and test all pass on a clean project."""
        report = orchestrator.checks([LINUX])[LINUX]

        assert report.passed
        assert [r.kind for r in report.results] == [CheckKind.LINT, CheckKind.FORMAT, CheckKind.PACKAGE_BUILD, CheckKind.TEST]
        assert report.system == "x86_64-linux"

    def test_failing_lint_does_not_hide_build(self, orchestrator, fake_runner):
        """A lint warning fails lint only."""
        fake_runner.respond("lint", output="warning: unused variable: `x`\n")
        report = orchestrator.checks([LINUX])[LINUX]

        assert report.get(CheckKind.LINT).status is CheckStatus.FAIL
        assert report.get(CheckKind.FORMAT).passed
        assert report.get(CheckKind.PACKAGE_BUILD).passed

    def test_dependency_failure_reported_per_check(self, orchestrator, fake_runner):
        """A failed deps build blocks lint and fails package-build with its reason."""
        fake_runner.respond("deps", returncode=101)
        report = orchestrator.checks([LINUX])[LINUX]

        assert report.get(CheckKind.LINT).reason == f"Dependency '{deps_stage(LINUX)}' failed"
        assert report.get(CheckKind.FORMAT).passed
        assert report.get(CheckKind.PACKAGE_BUILD).reason == "Dependency build failed (exit code 101)"
        assert fake_runner.calls("compile") == []

    def test_failures_logged_through_aggregator(self, orchestrator, fake_runner, caplog):
        """Reports are assembled by the check aggregator, which logs each failure."""
        fake_runner.respond("format", returncode=1)
        with caplog.at_level(logging.INFO, logger="hermbuild"):
            orchestrator.checks([LINUX])
        assert "Check format failed on x86_64-linux: sources are not formatted" in caplog.text

    def test_checks_reuse_package_stage(self, orchestrator, fake_runner):
        """Checks after package() reuse the memoized package stage."""
        orchestrator.package(LINUX)
        orchestrator.checks([LINUX])
        assert len(fake_runner.calls("compile")) == 1

    def test_several_systems(self, orchestrator):
        """Reports are keyed by system."""
        reports = orchestrator.checks([LINUX, DARWIN])
        assert set(reports) == {LINUX, DARWIN}
        assert reports[DARWIN].system == "aarch64-darwin"

    def test_check_stage_names(self):
        """Check stages are named by kind and system."""
        assert check_stage(CheckKind.LINT, LINUX) == "check:lint:x86_64-linux"
        assert check_stage(CheckKind.PACKAGE_BUILD, ARM_LINUX) == "check:package-build:aarch64-linux"

    def test_failed_stage_memoized(self, orchestrator, fake_runner):
        """A failed stage is not retried within one invocation."""
        fake_runner.respond("deps", returncode=101)
        orchestrator.checks([LINUX])
        result = orchestrator.evaluate([package_stage(LINUX)])

        assert result.get(deps_stage(LINUX)).phase is StagePhase.FAILED
        assert len(fake_runner.calls("deps")) == 1


class TestShellAndFormatter:
    """Test devShell and formatter outputs."""

    def test_dev_shell_matches_build(self, orchestrator):
        """The shell shares the deps stage's toolchain and profile."""
        shell = orchestrator.dev_shell(LINUX)
        dep = orchestrator.evaluate([deps_stage(LINUX)]).result_of(deps_stage(LINUX))

        assert shell.toolchain is dep.toolchain
        assert shell.profile is dep.profile
        assert shell.as_dict()["CARGO_TARGET_X86_64_UNKNOWN_LINUX_GNU_LINKER"] == "clang"
        assert shell.tools == ("cargo-nextest", "mold")

    def test_darwin_shell_has_frameworks(self, orchestrator):
        """Darwin shells carry the platform-specific runtime inputs."""
        shell = orchestrator.dev_shell(DARWIN)
        assert shell.as_dict()["buildInputs"] == "openssl sqlite Security SystemConfiguration"
        assert orchestrator.profile(DARWIN) is shell.profile

    def test_formatter_runs_in_project(self, orchestrator, fake_runner, project_dir):
        """The formatter handle modifies the working tree in place."""
        handle = orchestrator.formatter()
        handle.run(fake_runner)

        invocation = fake_runner.calls("fmt")[0]
        assert invocation.cwd == project_dir.resolve()
        assert invocation.argv[0].endswith("cargo")
        assert "--check" not in invocation.argv

    def test_profile_stage_name(self):
        """Profile stages are named by system."""
        assert profile_stage(DARWIN) == "profile:aarch64-darwin"


def test_program_override(project_dir, invocation, fake_runner):
    """A configured program name that the build did not produce is a build error."""
    ini = project_dir / "hermbuild.ini"
    ini.write_text(ini.read_text().replace("name = lunatic", "name = lunatic\nprogram = lunatic-cli"))
    orchestrator = BuildOrchestrator(load_project_config(project_dir), invocation, runner=fake_runner)

    with pytest.raises(BuildError, match="lunatic-cli"):
        orchestrator.app(LINUX)


def test_program_change_rebuilds_package(project_dir, invocation, fake_runner):
    """Changing the program name changes the package key instead of reusing a stale artifact."""
    first = BuildOrchestrator(load_project_config(project_dir), invocation, runner=fake_runner).package(LINUX)

    def build_other(inv):
        if inv.label.startswith("compile"):
            release = Path(inv.env["CARGO_TARGET_DIR"]) / "release"
            release.mkdir(parents=True, exist_ok=True)
            (release / "other").write_text("#!/bin/sh\n", encoding="utf-8")

    fake_runner.on_run = build_other
    ini = project_dir / "hermbuild.ini"
    ini.write_text(ini.read_text().replace("name = lunatic", "name = lunatic\nprogram = other"))
    orchestrator = BuildOrchestrator(load_project_config(project_dir), invocation, runner=fake_runner)
    second = orchestrator.package(LINUX)

    assert second.key != first.key
    assert not second.cached
    assert second.files == ("bin/other",)
    assert orchestrator.app(LINUX).program == "other"


def _git(root: Path, *args: str) -> str:
    return subprocess.run(
        ["git", "-c", "user.name=hermbuild", "-c", "user.email=hermbuild@example.com", "-c", "commit.gpgsign=false", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    ).stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_untracked_fixture_reaches_checks(project_dir, orchestrator, fake_runner):
    """A fixture matching the include rules but never added to git is present in every check workspace."""
    _git(project_dir, "init", "-q")
    _git(project_dir, "add", "Cargo.toml", "Cargo.lock", "src/main.rs", "hermbuild.ini")
    _git(project_dir, "commit", "-q", "-m", "initial")
    assert "?? tests/" in _git(project_dir, "status", "--porcelain")

    seen: dict[str, tuple[bool, bool]] = {}

    def record(inv):
        kind = inv.label.split(":", 1)[0]
        if kind in ("lint", "format", "test"):
            seen[kind] = ((inv.cwd / "tests" / "data" / "hello.wat").is_file(), (inv.cwd / ".git").exists())

    fake_runner.on_run = record
    report = orchestrator.checks([LINUX])[LINUX]

    assert report.passed
    assert seen == {"lint": (True, False), "format": (True, False), "test": (True, False)}

"""
Verification checks.

Every check runs in a workspace materialized from the same SourceSet the
package was built from, with the same toolchain. Results are collected per
kind and reported independently: a failing lint never hides a failing format
check or a failing build.

Lint has zero tolerance: any warning line in the lint output fails the check
even if the tool exits with status 0.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Union

from hermbuild.build.deps_builder import DependencyArtifact
from hermbuild.build.package_builder import PackageArtifact, PackageOutcome
from hermbuild.build.workspace import Workspace, materialize, seed_target
from hermbuild.config.model import BuildSettings, CheckSettings
from hermbuild.env.common import build_environment, render_command
from hermbuild.errors import BuildError, BuildStage, CheckFailure
from hermbuild.platform.profiles import PlatformProfile
from hermbuild.source.selector import SourceSet
from hermbuild.toolchain.resolver import Toolchain
from hermbuild.toolchain.runner import ToolRunner, invoke

logger = logging.getLogger(__name__)


class CheckKind(Enum):
    LINT = "lint"
    FORMAT = "format"
    PACKAGE_BUILD = "package-build"
    TEST = "test"

    def __str__(self) -> str:
        return self.value


class CheckStatus(Enum):
    PASS = "pass"
    FAIL = "fail"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check.

    Attributes:
        kind: Which check
        status: pass or fail
        reason: Short human-readable reason (empty on pass)
        output: Captured tool output, for failure reports
    """

    kind: CheckKind
    status: CheckStatus
    reason: str = ""
    output: str = field(default="", repr=False)

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASS

    @classmethod
    def ok(cls, kind: CheckKind, output: str = "") -> "CheckResult":
        return cls(kind, CheckStatus.PASS, "", output)

    @classmethod
    def fail(cls, kind: CheckKind, reason: str, output: str = "") -> "CheckResult":
        return cls(kind, CheckStatus.FAIL, reason, output)


@dataclass(frozen=True)
class CheckReport:
    """Aggregate of every check run for one platform."""

    results: tuple[CheckResult, ...]
    source_fingerprint: str = ""
    system: str = ""

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> list[CheckResult]:
        return [r for r in self.results if not r.passed]

    def get(self, kind: CheckKind) -> Optional[CheckResult]:
        for result in self.results:
            if result.kind is kind:
                return result
        return None

    def raise_for_failures(self) -> None:
        """Raise CheckFailure for the first failing check, if any."""
        failures = self.failures
        if failures:
            first = failures[0]
            raise CheckFailure(str(first.kind), first.reason)


def count_warnings(output: str, pattern: str) -> int:
    return len(re.findall(pattern, output, flags=re.MULTILINE))


class CheckAggregator:
    """Runs lint and format checks and folds in the package outcome.

    Args:
        runner: Tool runner
        build: Build settings (environment shared with the builders)
        checks: Check commands
        work_root: Directory for temporary workspaces
        environ: Inherited environment snapshot
    """

    def __init__(
        self,
        runner: ToolRunner,
        build: BuildSettings,
        checks: CheckSettings,
        work_root: Path,
        environ: Mapping[str, str],
    ) -> None:
        self.runner = runner
        self.build = build
        self.checks = checks
        self.work_root = Path(work_root)
        self.environ = environ

    def lint(self, dep: DependencyArtifact, source_set: SourceSet) -> CheckResult:
        """Run the linter over sources, examples, tests and benches.

        Fails on a non-zero exit or on any warning line in the output.
        """
        profile = dep.profile
        with Workspace(self.work_root, f"lint-{profile.key}") as ws:
            materialize(source_set, ws.src_dir)
            seed_target(dep.path, ws.target_dir)
            env = build_environment(self.environ, dep.toolchain, profile, self.build, ws.target_dir)
            argv = dep.toolchain.command(render_command(self.checks.lint_command, profile))
            result = invoke(self.runner, argv, ws.src_dir, env, f"lint:{profile.key}")

        if not result.ok:
            return CheckResult.fail(CheckKind.LINT, f"linter exited with code {result.returncode}", result.output)
        warnings = count_warnings(result.output, self.checks.lint_warning_pattern)
        if warnings:
            return CheckResult.fail(CheckKind.LINT, f"{warnings} warning(s) reported", result.output)
        return CheckResult.ok(CheckKind.LINT, result.output)

    def format(self, toolchain: Toolchain, profile: PlatformProfile, source_set: SourceSet) -> CheckResult:
        """Check formatting without modifying anything."""
        with Workspace(self.work_root, f"format-{profile.key}") as ws:
            materialize(source_set, ws.src_dir)
            env = build_environment(self.environ, toolchain, profile, self.build, ws.target_dir)
            argv = toolchain.command(render_command(self.checks.format_command, profile))
            result = invoke(self.runner, argv, ws.src_dir, env, f"format:{profile.key}")

        if not result.ok:
            return CheckResult.fail(CheckKind.FORMAT, "sources are not formatted", result.output)
        return CheckResult.ok(CheckKind.FORMAT, result.output)

    def package_build(self, outcome: Union[PackageOutcome, BaseException, None]) -> list[CheckResult]:
        """Translate a package build outcome into check results.

        A separate test result is reported whenever the test stage was
        reached (it passed or failed).
        """
        if isinstance(outcome, PackageArtifact):
            results = [CheckResult.ok(CheckKind.PACKAGE_BUILD)]
            if outcome.tested:
                results.append(CheckResult.ok(CheckKind.TEST))
            return results

        if isinstance(outcome, BuildError) and outcome.stage is BuildStage.TEST:
            return [
                CheckResult.fail(CheckKind.PACKAGE_BUILD, "test stage failed", outcome.tool_output),
                CheckResult.fail(CheckKind.TEST, str(outcome), outcome.tool_output),
            ]

        reason = str(outcome) if outcome is not None else "package was not built"
        output = outcome.tool_output if isinstance(outcome, BuildError) else ""
        return [CheckResult.fail(CheckKind.PACKAGE_BUILD, reason, output)]

    def run_checks(
        self,
        toolchain: Toolchain,
        source_set: SourceSet,
        package_outcome: PackageOutcome,
        *,
        dependency: DependencyArtifact,
        kinds: Iterable[CheckKind] = (CheckKind.LINT, CheckKind.FORMAT, CheckKind.PACKAGE_BUILD),
    ) -> CheckReport:
        """Run the requested checks concurrently.

        Raises:
            ValueError: If the dependency artifact was built with another toolchain.
        """
        if dependency.toolchain.identity != toolchain.identity:
            raise ValueError("Checks must run with the toolchain the dependency artifact was built with")

        kinds = tuple(kinds)
        profile = dependency.profile

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="check") as pool:
            lint_future = pool.submit(self.lint, dependency, source_set) if CheckKind.LINT in kinds else None
            format_future = pool.submit(self.format, toolchain, profile, source_set) if CheckKind.FORMAT in kinds else None
            lint = lint_future.result() if lint_future is not None else None
            fmt = format_future.result() if format_future is not None else None

        package = self.package_build(package_outcome) if CheckKind.PACKAGE_BUILD in kinds else ()
        return self.assemble(source_set, str(profile.key), lint=lint, fmt=fmt, package=package)

    def assemble(
        self,
        source_set: SourceSet,
        system: str,
        lint: Optional[CheckResult] = None,
        fmt: Optional[CheckResult] = None,
        package: Sequence[CheckResult] = (),
    ) -> CheckReport:
        """Fold per-kind results into one report, in lint, format, package-build order."""
        results = [r for r in (lint, fmt) if r is not None]
        results.extend(package)

        report = CheckReport(tuple(results), source_set.fingerprint, system)
        for result in report.failures:
            logger.info("Check %s failed on %s: %s", result.kind, system, result.reason)
        return report

"""
Build orchestrator and named outputs.

The orchestrator declares the build graph for one package:

    sources ─┬──────────────┬──────────────────────────────┐
    toolchain ┼─ deps:S ─────┼─ package:S ─ check:package-build:S
    profile:S ┘      └───────┴─ check:lint:S
    toolchain, profile:S, sources ─ check:format:S
    toolchain, profile:S ─ shell:S

and evaluates the part each named output needs (package, app, checks,
devShell, formatter). Completed stages are memoized for the lifetime of the
orchestrator, so asking for checks after the package reuses the package
stage instead of running it again.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from hermbuild import output
from hermbuild.build.cache import ArtifactCache
from hermbuild.build.deps_builder import DependencyArtifact, DependencyArtifactBuilder
from hermbuild.build.package_builder import PackageArtifact, PackageBuilder
from hermbuild.checks.aggregator import CheckAggregator, CheckKind, CheckReport, CheckResult
from hermbuild.config.invocation import InvocationConfig
from hermbuild.config.model import ProjectConfig
from hermbuild.env.common import build_environment, render_command
from hermbuild.env.shell import EnvironmentComposer, EnvironmentDescriptor
from hermbuild.errors import BuildError, BuildStage
from hermbuild.graph.callbacks import ProgressCallback
from hermbuild.graph.executor import GraphExecutor
from hermbuild.graph.models import GraphResult, StagePhase, StageTask
from hermbuild.platform.profiles import PlatformKey, PlatformProfile, detect_host_platform
from hermbuild.source.selector import SourceSet, select
from hermbuild.toolchain.resolver import Toolchain, ToolchainResolver
from hermbuild.toolchain.runner import SubprocessToolRunner, ToolResult, ToolRunner, invoke

logger = logging.getLogger(__name__)

SOURCES = "sources"
TOOLCHAIN = "toolchain"

_CHECK_STAGES = {
    CheckKind.LINT: "check:lint",
    CheckKind.FORMAT: "check:format",
    CheckKind.PACKAGE_BUILD: "check:package-build",
}


def profile_stage(key: PlatformKey) -> str:
    return f"profile:{key}"


def deps_stage(key: PlatformKey) -> str:
    return f"deps:{key}"


def package_stage(key: PlatformKey) -> str:
    return f"package:{key}"


def shell_stage(key: PlatformKey) -> str:
    return f"shell:{key}"


def check_stage(kind: CheckKind, key: PlatformKey) -> str:
    return f"{_CHECK_STAGES[kind]}:{key}"


@dataclass(frozen=True)
class AppHandle:
    """Runnable program inside a package artifact."""

    program: str
    path: Path
    artifact: PackageArtifact

    def argv(self, args: Sequence[str] = ()) -> list[str]:
        return [str(self.path), *args]


@dataclass(frozen=True)
class FormatterHandle:
    """The canonical formatter, applied to the working tree in place."""

    argv: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict, repr=False)

    def run(self, runner: ToolRunner) -> ToolResult:
        return invoke(runner, self.argv, self.cwd, self.env, "fmt")


@dataclass(frozen=True)
class _StageSpec:
    func: Callable[[dict[str, Any]], Any]
    dependencies: tuple[str, ...] = ()
    tolerate_failures: bool = False


class BuildOrchestrator:
    """Evaluates named outputs of one package's build graph.

    Args:
        project: Parsed hermbuild.ini
        invocation: Per-invocation settings (target dir, toolchain store, environment)
        runner: Tool runner (defaults to real subprocesses)
        resolver: Toolchain resolver (defaults to the invocation's store)
        max_workers: Concurrently running stages
        callback: Receives stage transitions
    """

    def __init__(
        self,
        project: ProjectConfig,
        invocation: InvocationConfig,
        runner: Optional[ToolRunner] = None,
        resolver: Optional[ToolchainResolver] = None,
        max_workers: int = 4,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.project = project
        self.invocation = invocation
        self.runner: ToolRunner = runner if runner is not None else SubprocessToolRunner()
        self.resolver = resolver if resolver is not None else ToolchainResolver(invocation.toolchains_dir, project.toolchain.dist_url)
        self.cache = ArtifactCache(invocation.cache_dir)
        self.input_composer = project.inputs.composer()

        environ = invocation.environ
        work_root = invocation.work_dir
        self.deps_builder = DependencyArtifactBuilder(self.cache, self.runner, project.build, work_root, environ)
        self.package_builder = PackageBuilder(
            self.cache,
            self.runner,
            project.build,
            work_root,
            environ,
            default_artifacts=(f"release/{project.package.program_name}",),
        )
        self.check_aggregator = CheckAggregator(self.runner, project.build, project.checks, work_root, environ)
        self.env_composer = EnvironmentComposer(project.shell, project.build)

        self.executor = GraphExecutor(max_workers=max_workers, callback=callback)
        self.executor.add_cancel_hook(self.runner.cancel_all)

        self._memo: dict[str, StageTask] = {}
        self._memo_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Graph declaration
    # ------------------------------------------------------------------

    def _spec(self, name: str) -> _StageSpec:
        if name == SOURCES:
            return _StageSpec(lambda _: self._select_sources())
        if name == TOOLCHAIN:
            return _StageSpec(lambda _: self._resolve_toolchain())

        kind, _, system = name.rpartition(":")
        key = PlatformKey.parse(system)

        if kind == "profile":
            return _StageSpec(lambda _: self.input_composer.compose(key))
        if kind == "deps":
            return _StageSpec(lambda i: self._build_deps(i, key), (SOURCES, TOOLCHAIN, profile_stage(key)))
        if kind == "package":
            return _StageSpec(lambda i: self._build_package(i, key), (SOURCES, deps_stage(key)))
        if kind == "shell":
            return _StageSpec(lambda i: self._compose_shell(i, key), (TOOLCHAIN, profile_stage(key)))
        if kind == "check:lint":
            return _StageSpec(
                lambda i: self.check_aggregator.lint(i[deps_stage(key)], i[SOURCES]),
                (SOURCES, deps_stage(key)),
            )
        if kind == "check:format":
            return _StageSpec(
                lambda i: self.check_aggregator.format(i[TOOLCHAIN], i[profile_stage(key)], i[SOURCES]),
                (SOURCES, TOOLCHAIN, profile_stage(key)),
            )
        if kind == "check:package-build":
            return _StageSpec(
                lambda i: self.check_aggregator.package_build(i[package_stage(key)]),
                (package_stage(key),),
                tolerate_failures=True,
            )
        raise KeyError(f"Unknown stage: {name}")

    def _collect(self, targets: Iterable[str]) -> list[StageTask]:
        """Stage tasks for targets and their transitive dependencies."""
        tasks: dict[str, StageTask] = {}
        pending = list(targets)
        while pending:
            name = pending.pop()
            if name in tasks:
                continue
            with self._memo_lock:
                memoized = self._memo.get(name)
            if memoized is not None:
                tasks[name] = memoized
                pending.extend(memoized.dependencies)
                continue
            spec = self._spec(name)
            tasks[name] = StageTask(
                name=name,
                func=spec.func,
                dependencies=list(spec.dependencies),
                tolerate_failures=spec.tolerate_failures,
            )
            pending.extend(spec.dependencies)
        return list(tasks.values())

    def evaluate(self, targets: Iterable[str]) -> GraphResult:
        """Evaluate the named stages and everything they depend on."""
        result = self.executor.run(self._collect(targets))
        with self._memo_lock:
            for task in result.tasks:
                if task.phase in (StagePhase.DONE, StagePhase.FAILED):
                    self._memo[task.name] = task
        return result

    def cancel(self) -> None:
        self.executor.cancel()

    # ------------------------------------------------------------------
    # Stage functions
    # ------------------------------------------------------------------

    def _select_sources(self) -> SourceSet:
        rules = self.project.sources.include_rules(self.invocation.excluded_source_paths())
        source_set = select(self.project.root, rules)
        output.log_detail(f"{len(source_set)} source files, fingerprint {source_set.fingerprint[:12]}", verbose_only=True)
        return source_set

    def _resolve_toolchain(self) -> Toolchain:
        settings = self.project.toolchain
        return self.resolver.resolve(settings.channel, settings.components)

    def _build_deps(self, inputs: dict[str, Any], key: PlatformKey) -> DependencyArtifact:
        sources: SourceSet = inputs[SOURCES]
        manifest = sources.subset(self.project.sources.manifest_patterns)
        if not manifest.files:
            logger.warning("No dependency manifest files matched in %s", sources.root)
        artifact = self.deps_builder.build_deps(inputs[TOOLCHAIN], manifest, inputs[profile_stage(key)])
        output.log_artifact("deps", f"{key} {artifact.key[:12]}", cached=artifact.cached)
        return artifact

    def _build_package(self, inputs: dict[str, Any], key: PlatformKey) -> PackageArtifact:
        artifact = self.package_builder.build(inputs[deps_stage(key)], inputs[SOURCES], self.project.package.run_tests)
        output.log_artifact("package", f"{key} {artifact.key[:12]}", cached=artifact.cached)
        return artifact

    def _compose_shell(self, inputs: dict[str, Any], key: PlatformKey) -> EnvironmentDescriptor:
        return self.env_composer.compose_shell(
            inputs[TOOLCHAIN],
            inputs[profile_stage(key)],
            inherited_path=self.invocation.environ.get("PATH", ""),
        )

    # ------------------------------------------------------------------
    # Named outputs
    # ------------------------------------------------------------------

    def _system(self, system: Optional[PlatformKey]) -> PlatformKey:
        return system if system is not None else detect_host_platform()

    def profile(self, system: Optional[PlatformKey] = None) -> PlatformProfile:
        key = self._system(system)
        return self.evaluate([profile_stage(key)]).result_of(profile_stage(key))

    def package(self, system: Optional[PlatformKey] = None) -> PackageArtifact:
        """Build (or fetch from cache) the package.

        Raises:
            SelectionError, ToolchainUnavailable, DependencyBuildFailed, BuildError
        """
        key = self._system(system)
        return self.evaluate([package_stage(key)]).result_of(package_stage(key))

    def app(self, system: Optional[PlatformKey] = None) -> AppHandle:
        """Handle to the package's main program."""
        artifact = self.package(system)
        program = self.project.package.program_name
        path = artifact.executable(program)
        if not path.is_file():
            raise BuildError(BuildStage.COMPILE, f"program '{program}' not found in package artifact")
        return AppHandle(program=program, path=path, artifact=artifact)

    def checks(self, systems: Optional[Sequence[PlatformKey]] = None) -> dict[PlatformKey, CheckReport]:
        """Run every check kind on each system.

        Check failures are reported, not raised. Failures of shared inputs
        (source selection, toolchain, platform profile) are raised.
        """
        keys = list(systems) if systems else [self._system(None)]
        targets = [check_stage(kind, key) for key in keys for kind in _CHECK_STAGES]
        result = self.evaluate(targets)

        for shared in [SOURCES, TOOLCHAIN, *(profile_stage(k) for k in keys)]:
            task = result.get(shared)
            if task.phase is not StagePhase.DONE and task.error is not None:
                raise task.error

        source_set: SourceSet = result.result_of(SOURCES)
        return {key: self._check_report(result, key, source_set) for key in keys}

    def _check_report(self, result: GraphResult, key: PlatformKey, source_set: SourceSet) -> CheckReport:
        def outcome(kind: CheckKind) -> Any:
            task = result.get(check_stage(kind, key))
            if task.phase is StagePhase.DONE:
                return task.result
            return CheckResult.fail(kind, task.error_message or "not run")

        package = outcome(CheckKind.PACKAGE_BUILD)
        return self.check_aggregator.assemble(
            source_set,
            str(key),
            lint=outcome(CheckKind.LINT),
            fmt=outcome(CheckKind.FORMAT),
            package=package if isinstance(package, list) else [package],
        )

    def dev_shell(self, system: Optional[PlatformKey] = None) -> EnvironmentDescriptor:
        key = self._system(system)
        return self.evaluate([shell_stage(key)]).result_of(shell_stage(key))

    def formatter(self) -> FormatterHandle:
        """Handle to the canonical formatter, run in the project directory."""
        key = self._system(None)
        result = self.evaluate([TOOLCHAIN, profile_stage(key)])
        toolchain: Toolchain = result.result_of(TOOLCHAIN)
        profile: PlatformProfile = result.result_of(profile_stage(key))
        env = build_environment(
            self.invocation.environ,
            toolchain,
            profile,
            self.project.build,
            self.invocation.target_dir / "fmt",
        )
        argv = toolchain.command(render_command(self.project.checks.formatter_command, profile))
        return FormatterHandle(argv=tuple(argv), cwd=self.project.root, env=env)

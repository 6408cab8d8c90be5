"""
Full package build.

The workspace's target directory is seeded from the dependency artifact, so
the build only compiles the package's own sources. The artifact key adds the
SourceSet fingerprint and the run_tests flag to the dependency key.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence, Union

from hermbuild.config.model import BuildSettings
from hermbuild.env.common import build_environment, render_command
from hermbuild.errors import BuildError, BuildStage
from hermbuild.platform.profiles import PlatformProfile
from hermbuild.source.selector import SourceSet
from hermbuild.toolchain.runner import ToolRunner, invoke

from .cache import PACKAGE, ArtifactCache, make_key
from .deps_builder import DependencyArtifact, KeyLocks
from .workspace import Workspace, materialize, seed_target

logger = logging.getLogger(__name__)

BIN_DIR = "bin"


@dataclass(frozen=True)
class PackageArtifact:
    """A built (and optionally tested) package.

    Attributes:
        key: Cache key
        path: Output directory (executables under bin/)
        dependency_key: Key of the dependency artifact it was built on
        source_fingerprint: Fingerprint of the SourceSet it was built from
        tested: Whether the test suite ran and passed
        content_digest: Digest of the output tree
        files: Published files, relative to path
        cached: True when served from the cache
    """

    key: str
    path: Path
    dependency_key: str
    source_fingerprint: str
    tested: bool
    content_digest: str
    files: tuple[str, ...] = ()
    cached: bool = field(default=False, compare=False)

    def executable(self, name: str) -> Path:
        return self.path / BIN_DIR / name


PackageOutcome = Union[PackageArtifact, BuildError]


class PackageBuilder:
    """Builds and caches packages on top of dependency artifacts.

    Args:
        cache: Artifact cache
        runner: Tool runner
        settings: Build settings
        work_root: Directory for temporary workspaces
        environ: Inherited environment snapshot
        default_artifacts: Artifact globs used when settings declare none
    """

    def __init__(
        self,
        cache: ArtifactCache,
        runner: ToolRunner,
        settings: BuildSettings,
        work_root: Path,
        environ: Mapping[str, str],
        default_artifacts: Sequence[str] = (),
    ) -> None:
        self.cache = cache
        self.runner = runner
        self.settings = settings
        self.work_root = Path(work_root)
        self.environ = environ
        self.artifact_patterns = tuple(settings.artifacts or default_artifacts)
        self._locks = KeyLocks()

    def artifact_key(self, dep: DependencyArtifact, source_set: SourceSet, run_tests: bool) -> str:
        return make_key(
            "package",
            dep.key,
            source_set.fingerprint,
            "tests" if run_tests else "no-tests",
            "\0".join(self.artifact_patterns),
        )

    def build(self, dep: DependencyArtifact, source_set: SourceSet, run_tests: bool = True) -> PackageArtifact:
        """Build the package, reusing a cached one when the inputs match.

        Raises:
            BuildError: With stage COMPILE or TEST. Nothing is cached.
        """
        key = self.artifact_key(dep, source_set, run_tests)
        profile = dep.profile

        with self._locks.get(key):
            entry = self.cache.lookup(PACKAGE, key)
            if entry is not None:
                logger.info("Package %s for %s found in cache", key[:12], profile.key)
                return self._artifact(key, entry.output, dep, source_set, run_tests, entry.content_digest, cached=True)

            logger.info("Building package %s for %s", key[:12], profile.key)
            with self.cache.stage(PACKAGE, key) as staged:
                with Workspace(self.work_root, f"package-{profile.key}") as ws:
                    materialize(source_set, ws.src_dir)
                    seed_target(dep.path, ws.target_dir)
                    env = build_environment(self.environ, dep.toolchain, profile, self.settings, ws.target_dir)

                    self._run(BuildStage.COMPILE, self.settings.build_command, dep, ws, env)
                    if run_tests:
                        self._run(BuildStage.TEST, self.settings.test_command, dep, ws, env)

                    self._collect(ws.target_dir, staged.output / BIN_DIR, profile)

                entry = self.cache.publish(
                    staged,
                    {
                        "dependency_key": dep.key,
                        "source_fingerprint": source_set.fingerprint,
                        "run_tests": run_tests,
                        "system": str(profile.key),
                    },
                )

            return self._artifact(key, entry.output, dep, source_set, run_tests, entry.content_digest, cached=False)

    def try_build(self, dep: DependencyArtifact, source_set: SourceSet, run_tests: bool = True) -> PackageOutcome:
        """Like build(), but return the BuildError instead of raising it."""
        try:
            return self.build(dep, source_set, run_tests)
        except BuildError as e:
            return e

    def _run(self, stage: BuildStage, template: Sequence[str], dep: DependencyArtifact, ws: Workspace, env: dict[str, str]) -> None:
        argv = dep.toolchain.command(render_command(template, dep.profile))
        result = invoke(self.runner, argv, ws.src_dir, env, f"{stage}:{dep.profile.key}")
        if not result.ok:
            raise BuildError(stage, f"exit code {result.returncode}", result.output)

    def _collect(self, target_dir: Path, dest: Path, profile: PlatformProfile) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        for pattern in render_command(self.artifact_patterns, profile):
            matches = sorted(p for p in target_dir.glob(pattern) if p.is_file())
            if not matches:
                raise BuildError(BuildStage.COMPILE, f"expected artifact '{pattern}' was not produced")
            for path in matches:
                shutil.copy2(path, dest / path.name)

    def _artifact(
        self,
        key: str,
        path: Path,
        dep: DependencyArtifact,
        source_set: SourceSet,
        run_tests: bool,
        content_digest: str,
        cached: bool,
    ) -> PackageArtifact:
        files = tuple(sorted(p.relative_to(path).as_posix() for p in path.rglob("*") if p.is_file()))
        return PackageArtifact(
            key=key,
            path=path,
            dependency_key=dep.key,
            source_fingerprint=source_set.fingerprint,
            tested=run_tests,
            content_digest=content_digest,
            files=files,
            cached=cached,
        )

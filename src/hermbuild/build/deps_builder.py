"""
Dependencies-only build.

The artifact key covers exactly the dependency-declaration files (through the
manifest SourceSet's fingerprint) plus the toolchain, platform profile and
build settings. Application sources never reach this stage, so editing them
keeps the key, and the artifact, unchanged.
"""

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from hermbuild.config.model import BuildSettings
from hermbuild.env.common import build_environment, render_command
from hermbuild.errors import DependencyBuildFailed
from hermbuild.platform.profiles import PlatformProfile
from hermbuild.source.selector import SourceSet
from hermbuild.toolchain.resolver import Toolchain
from hermbuild.toolchain.runner import ToolRunner, invoke

from .cache import DEPS, ArtifactCache, make_key
from .workspace import Workspace, materialize, write_stubs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyArtifact:
    """Compiled third-party dependencies for one platform.

    Attributes:
        key: Cache key
        path: Directory holding the tool's target dir contents
        toolchain: Toolchain it was built with
        profile: Platform profile it was built for
        manifest_fingerprint: Fingerprint of the dependency-declaration files
        cached: True when served from the cache without running the tool
    """

    key: str
    path: Path
    toolchain: Toolchain
    profile: PlatformProfile
    manifest_fingerprint: str
    cached: bool = field(default=False, compare=False)


class KeyLocks:
    """One lock per cache key, so same-key builds wait instead of duplicating work."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


class DependencyArtifactBuilder:
    """Builds and caches dependency artifacts.

    Args:
        cache: Artifact cache
        runner: Tool runner
        settings: Build settings (part of the key)
        work_root: Directory for temporary workspaces
        environ: Inherited environment snapshot
    """

    def __init__(
        self,
        cache: ArtifactCache,
        runner: ToolRunner,
        settings: BuildSettings,
        work_root: Path,
        environ: Mapping[str, str],
    ) -> None:
        self.cache = cache
        self.runner = runner
        self.settings = settings
        self.work_root = Path(work_root)
        self.environ = environ
        self._locks = KeyLocks()

    def artifact_key(self, toolchain: Toolchain, manifest_fingerprint: str, profile: PlatformProfile) -> str:
        return make_key("deps", toolchain.identity, manifest_fingerprint, profile.identity, self.settings.identity)

    def build_deps(self, toolchain: Toolchain, manifest: SourceSet, profile: PlatformProfile) -> DependencyArtifact:
        """Return the dependency artifact, building it on a cache miss.

        Args:
            toolchain: Resolved toolchain
            manifest: The dependency-declaration files only
            profile: Platform profile

        Raises:
            DependencyBuildFailed: If the deps-only build fails. Nothing is cached.
        """
        fingerprint = manifest.fingerprint
        key = self.artifact_key(toolchain, fingerprint, profile)

        with self._locks.get(key):
            entry = self.cache.lookup(DEPS, key)
            if entry is not None:
                logger.info("Dependency artifact %s for %s found in cache", key[:12], profile.key)
                return DependencyArtifact(key, entry.output, toolchain, profile, fingerprint, cached=True)

            logger.info("Building dependency artifact %s for %s", key[:12], profile.key)
            with self.cache.stage(DEPS, key) as staged:
                with Workspace(self.work_root, f"deps-{profile.key}") as ws:
                    materialize(manifest, ws.src_dir)
                    stubs = write_stubs(ws.src_dir, manifest.paths, self.settings.stubs, self.settings.stub_anchor)
                    logger.debug("Wrote %d stub sources", len(stubs))

                    env = build_environment(self.environ, toolchain, profile, self.settings, ws.target_dir)
                    argv = toolchain.command(render_command(self.settings.deps_command, profile))
                    result = invoke(self.runner, argv, ws.src_dir, env, f"deps:{profile.key}")
                    if not result.ok:
                        raise DependencyBuildFailed(result.output, result.returncode)

                    if ws.target_dir.exists():
                        staged.output.rmdir()
                        shutil.move(str(ws.target_dir), str(staged.output))

                entry = self.cache.publish(
                    staged,
                    {
                        "toolchain": toolchain.identity,
                        "manifest_fingerprint": fingerprint,
                        "profile": profile.identity,
                        "system": str(profile.key),
                        "settings": self.settings.identity,
                        "manifest_files": manifest.paths,
                    },
                )

            return DependencyArtifact(key, entry.output, toolchain, profile, fingerprint, cached=False)

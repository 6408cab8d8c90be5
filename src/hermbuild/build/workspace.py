"""
Build workspaces.

Every tool run happens in a private directory materialized from a SourceSet,
never in the user's working tree. That keeps each stage a function of its
declared inputs: whatever the selector did not include does not exist for
the tool.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from types import TracebackType
from typing import Iterable, Optional

from hermbuild.source.selector import SourceSet

logger = logging.getLogger(__name__)


def materialize(source_set: SourceSet, dest: Path) -> int:
    """Copy every entry of a SourceSet into dest.

    Symlinks are recreated with their original target.

    Returns:
        Number of entries written
    """
    dest.mkdir(parents=True, exist_ok=True)
    for source_file in source_set:
        src = source_set.absolute(source_file)
        out = dest / PurePosixPath(source_file.path)
        out.parent.mkdir(parents=True, exist_ok=True)
        if source_file.kind == "symlink":
            os.symlink(os.readlink(src), out)
        else:
            shutil.copy2(src, out)
    return len(source_set)


def write_stubs(dest: Path, manifest_paths: Iterable[str], stubs: Iterable[tuple[str, str]], anchor: str) -> list[str]:
    """Write stub sources next to every crate manifest in a deps workspace.

    A dependencies-only build compiles the manifest's dependency graph
    against placeholder sources, so its result depends on the manifest files
    alone.

    Args:
        dest: Workspace root
        manifest_paths: Relative paths of the materialized manifest files
        stubs: (relative path, content) pairs
        anchor: Manifest file name marking a crate root; empty writes the
            stubs once at the workspace root

    Returns:
        Relative paths of the stubs written
    """
    stubs = list(stubs)
    if anchor:
        roots = sorted({str(PurePosixPath(p).parent) for p in manifest_paths if PurePosixPath(p).name == anchor})
    else:
        roots = ["."]

    written = []
    for root in roots:
        for rel, content in stubs:
            rel_path = PurePosixPath(root) / rel if root != "." else PurePosixPath(rel)
            target = dest / rel_path
            if target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            written.append(rel_path.as_posix())
    return written


def seed_target(artifact_output: Path, target_dir: Path) -> None:
    """Seed a workspace target dir with a cached artifact's contents."""
    if artifact_output.is_dir():
        shutil.copytree(artifact_output, target_dir, symlinks=True, dirs_exist_ok=True)
    else:
        target_dir.mkdir(parents=True, exist_ok=True)


class Workspace:
    """Temporary build directory, removed on exit.

    Attributes:
        path: Workspace root
        src_dir: Materialized sources
        target_dir: Tool output directory
    """

    def __init__(self, work_root: Path, label: str) -> None:
        self.work_root = Path(work_root)
        self.label = label
        self.path: Path = Path()
        self.src_dir: Path = Path()
        self.target_dir: Path = Path()

    def __enter__(self) -> "Workspace":
        self.work_root.mkdir(parents=True, exist_ok=True)
        prefix = self.label.replace(":", "-").replace("/", "-") + "-"
        self.path = Path(tempfile.mkdtemp(prefix=prefix, dir=self.work_root))
        self.src_dir = self.path / "src"
        self.target_dir = self.path / "target"
        self.src_dir.mkdir()
        logger.debug("Created workspace %s", self.path)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

"""Source selection and content fingerprinting.

select() walks the source root and keeps every entry accepted by the default
role predicates OR by an auxiliary pattern. The two predicates are a set
union: an auxiliary pattern pulls a file in even when no role would (test
fixtures such as `*.wat` files are the typical case), and losing such a file
does not show up as a build error, only as failing tests.

The walk reads the filesystem rather than the version-control index, so
untracked files that match the rules are part of the set.

Fingerprints are SHA-256 over (relative path, kind, content digest) of every
included entry in path order. Timestamps never participate.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Iterator

from hermbuild.errors import ConfigError, SelectionError

from .roles import get_role, is_source_dir

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 65536

DEFAULT_MANIFEST_PATTERNS: tuple[str, ...] = (
    r"(.*/)?Cargo\.toml",
    r"(.*/)?Cargo\.lock",
    r"(.*/)?\.cargo/config(\.toml)?",
)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Return True if any regex pattern fully matches the relative path."""
    return any(_compile(p).fullmatch(path) is not None for p in patterns)


@dataclass(frozen=True)
class IncludeRules:
    """Inclusion rules for a source tree.

    Attributes:
        default_roles: Names of role predicates (see hermbuild.source.roles)
        aux_patterns: Regexes matched in full against the POSIX relative path
        exclude_paths: Relative paths never descended into (build output dirs
            that live inside the tree)
    """

    default_roles: tuple[str, ...] = ("cargo",)
    aux_patterns: tuple[str, ...] = ()
    exclude_paths: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for role in self.default_roles:
            get_role(role)
        for pattern in self.aux_patterns:
            try:
                _compile(pattern)
            except re.error as e:
                raise ConfigError(f"Invalid auxiliary pattern {pattern!r}: {e}") from e

    def matches_default(self, path: str, kind: str) -> bool:
        return any(get_role(role)(path, kind) for role in self.default_roles)

    def matches_aux(self, path: str, kind: str) -> bool:
        if kind == "unknown":
            return False
        return matches_any(path, self.aux_patterns)

    def descends(self, path: str) -> bool:
        """Whether the walk enters a directory.

        Every directory except VCS metadata, top-level build outputs and
        excluded paths is entered, whatever the roles say, so auxiliary
        patterns reach files below directories no role accepts.
        """
        return path not in self.exclude_paths and is_source_dir(path)

    def includes(self, path: str, kind: str) -> bool:
        """Union of the default-role and auxiliary predicates."""
        if path in self.exclude_paths:
            return False
        return self.matches_default(path, kind) or self.matches_aux(path, kind)


@dataclass(frozen=True)
class SourceFile:
    """One selected entry.

    Attributes:
        path: POSIX path relative to the source root
        kind: "regular" or "symlink"
        digest: SHA-256 of the file bytes (or of the link target for symlinks)
    """

    path: str
    kind: str
    digest: str


@dataclass(frozen=True)
class SourceSet:
    """Ordered, fingerprinted view of the build-relevant part of a tree."""

    root: Path
    files: tuple[SourceFile, ...]
    fingerprint: str = field(default="")

    def __post_init__(self) -> None:
        if not self.fingerprint:
            object.__setattr__(self, "fingerprint", compute_fingerprint(self.files))

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[SourceFile]:
        return iter(self.files)

    def __contains__(self, path: object) -> bool:
        return any(f.path == path for f in self.files)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    def absolute(self, source_file: SourceFile) -> Path:
        return self.root / source_file.path

    def subset(self, patterns: Iterable[str]) -> "SourceSet":
        """Return the entries whose relative path matches any pattern."""
        patterns = tuple(patterns)
        selected = tuple(f for f in self.files if matches_any(f.path, patterns))
        return SourceSet(root=self.root, files=selected)


def compute_fingerprint(files: Iterable[SourceFile]) -> str:
    """Fingerprint a sequence of source entries.

    Entries are hashed in path order so the result does not depend on the
    order the caller collected them in.
    """
    sha = hashlib.sha256()
    for f in sorted(files, key=lambda f: f.path):
        sha.update(f.path.encode("utf-8"))
        sha.update(b"\0")
        sha.update(f.kind.encode("ascii"))
        sha.update(b"\0")
        sha.update(f.digest.encode("ascii"))
        sha.update(b"\n")
    return sha.hexdigest()


def hash_file(path: Path) -> str:
    """SHA-256 of a file's contents, read in chunks."""
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def _entry_kind(entry: os.DirEntry) -> str:
    if entry.is_symlink():
        return "symlink"
    if entry.is_dir(follow_symlinks=False):
        return "directory"
    if entry.is_file(follow_symlinks=False):
        return "regular"
    return "unknown"


def _walk(directory: Path, prefix: str, rules: IncludeRules, out: list[SourceFile]) -> None:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise SelectionError(f"Cannot read directory {directory}: {e}", str(directory)) from e

    for entry in entries:
        rel = f"{prefix}{entry.name}"
        kind = _entry_kind(entry)

        if kind == "directory":
            if rules.descends(rel):
                _walk(Path(entry.path), f"{rel}/", rules, out)
            continue

        if not rules.includes(rel, kind):
            continue

        try:
            if kind == "symlink":
                target = os.readlink(entry.path)
                digest = hashlib.sha256(target.encode("utf-8")).hexdigest()
            else:
                digest = hash_file(Path(entry.path))
        except OSError as e:
            raise SelectionError(f"Cannot read source file {entry.path}: {e}", entry.path) from e

        out.append(SourceFile(path=rel, kind=kind, digest=digest))


def select(root: Path, rules: IncludeRules) -> SourceSet:
    """Select the build-relevant files under root.

    Args:
        root: Source tree root
        rules: Inclusion rules (default roles OR auxiliary patterns)

    Returns:
        SourceSet ordered by relative path, with its fingerprint

    Raises:
        SelectionError: If the root or any selected file cannot be read
    """
    root = Path(root)
    if not root.is_dir():
        raise SelectionError(f"Source root is not a readable directory: {root}", str(root))

    files: list[SourceFile] = []
    _walk(root, "", rules, files)
    files.sort(key=lambda f: f.path)

    source_set = SourceSet(root=root.resolve(), files=tuple(files))
    logger.debug(f"Selected {len(source_set)} files from {root} (fingerprint {source_set.fingerprint[:12]})")
    return source_set


def manifest_fingerprint(source_set: SourceSet, patterns: Iterable[str] = DEFAULT_MANIFEST_PATTERNS) -> str:
    """Fingerprint of exactly the dependency-declaration files.

    Application sources never participate, so editing them leaves the
    dependency artifact's cache key unchanged.
    """
    manifest = source_set.subset(patterns)
    if not manifest.files:
        logger.warning("No dependency manifest files matched in %s", source_set.root)
    else:
        logger.debug("Dependency manifest files: %s", ", ".join(manifest.paths))
    return manifest.fingerprint

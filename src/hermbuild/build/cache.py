"""
Content-keyed artifact cache.

Layout:

    <root>/deps/<key>/entry.json
    <root>/deps/<key>/out/...
    <root>/package/<key>/entry.json
    <root>/package/<key>/out/...
    <root>/tmp/<random>/          staging directories

An entry becomes visible with a single directory rename, so readers see either
nothing or a complete entry. Builders stage into a temporary directory under
the cache root (same filesystem), fill `out/`, then publish. When two writers
race on one key the first rename wins and the loser's staging directory is
discarded. A failed build never publishes anything.
"""

import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

ENTRY_FILE = "entry.json"
OUTPUT_DIR = "out"
STAGING_DIR = "tmp"

DEPS = "deps"
PACKAGE = "package"
KINDS = (DEPS, PACKAGE)


def make_key(*parts: str) -> str:
    """SHA-256 over the ordered key components."""
    sha = hashlib.sha256()
    for part in parts:
        sha.update(part.encode("utf-8"))
        sha.update(b"\0")
    return sha.hexdigest()


def tree_digest(root: Path) -> str:
    """Digest of a directory tree: relative paths, kinds and contents."""
    sha = hashlib.sha256()
    if not root.exists():
        return sha.hexdigest()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            rel = path.relative_to(root).as_posix()
            sha.update(rel.encode("utf-8"))
            sha.update(b"\0")
            if path.is_symlink():
                sha.update(b"L")
                sha.update(os.readlink(path).encode("utf-8"))
            else:
                sha.update(b"F")
                with open(path, "rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        sha.update(chunk)
            sha.update(b"\n")
    return sha.hexdigest()


def _dir_size(root: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            try:
                total += (Path(dirpath) / name).lstat().st_size
            except OSError:
                continue
    return total


@dataclass(frozen=True)
class CacheEntry:
    """A published cache entry.

    Attributes:
        kind: "deps" or "package"
        key: Content key
        path: Entry directory
        metadata: Contents of entry.json
    """

    kind: str
    key: str
    path: Path
    metadata: dict[str, Any]

    @property
    def output(self) -> Path:
        return self.path / OUTPUT_DIR

    @property
    def content_digest(self) -> str:
        return self.metadata.get("content_digest", "")

    @property
    def created(self) -> float:
        return float(self.metadata.get("created", 0.0))

    def size_bytes(self) -> int:
        return _dir_size(self.path)


@dataclass
class StagedEntry:
    """A staging directory being filled by a builder."""

    kind: str
    key: str
    path: Path

    @property
    def output(self) -> Path:
        return self.path / OUTPUT_DIR


class ArtifactCache:
    """Cache of build artifacts keyed by content.

    Args:
        root: Cache root directory
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _entry_dir(self, kind: str, key: str) -> Path:
        if kind not in KINDS:
            raise ValueError(f"Unknown artifact kind: {kind}")
        return self.root / kind / key

    def _read_entry(self, kind: str, key: str, path: Path) -> Optional[CacheEntry]:
        entry_file = path / ENTRY_FILE
        try:
            with open(entry_file, "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring corrupt cache entry {path}: {e}")
            return None
        return CacheEntry(kind=kind, key=key, path=path, metadata=metadata)

    def lookup(self, kind: str, key: str) -> Optional[CacheEntry]:
        """Return the published entry for key, or None."""
        return self._read_entry(kind, key, self._entry_dir(kind, key))

    @contextmanager
    def stage(self, kind: str, key: str) -> Iterator[StagedEntry]:
        """Create a staging directory that is removed on exit.

        Publishing moves the directory away, so cleanup only affects entries
        that were never published (failed or cancelled builds).
        """
        staging_root = self.root / STAGING_DIR
        staging_root.mkdir(parents=True, exist_ok=True)
        path = staging_root / f"{kind}-{key[:16]}-{uuid.uuid4().hex[:8]}"
        path.mkdir()
        (path / OUTPUT_DIR).mkdir()
        try:
            yield StagedEntry(kind=kind, key=key, path=path)
        finally:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)

    def publish(self, staged: StagedEntry, metadata: dict[str, Any]) -> CacheEntry:
        """Publish a staged entry atomically.

        If another writer already published the same key, its entry is kept
        and returned; our staged copy is discarded by stage().
        """
        final_dir = self._entry_dir(staged.kind, staged.key)

        existing = self._read_entry(staged.kind, staged.key, final_dir)
        if existing is not None:
            logger.debug(f"{staged.kind} entry {staged.key[:12]} already published; discarding staged copy")
            return existing

        metadata = dict(metadata)
        metadata.setdefault("key", staged.key)
        metadata.setdefault("kind", staged.kind)
        metadata["content_digest"] = tree_digest(staged.output)
        metadata["created"] = time.time()

        entry_file = staged.path / ENTRY_FILE
        temp_file = entry_file.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2, sort_keys=True)
        temp_file.replace(entry_file)

        final_dir.parent.mkdir(parents=True, exist_ok=True)
        if final_dir.exists():
            existing = self._read_entry(staged.kind, staged.key, final_dir)
            if existing is not None:
                return existing
            # Directory without a readable entry.json: leftover of a crash
            logger.warning(f"Replacing incomplete cache entry {final_dir}")
            self._discard(final_dir)

        try:
            os.rename(staged.path, final_dir)
        except OSError:
            existing = self._read_entry(staged.kind, staged.key, final_dir)
            if existing is None:
                raise
            logger.debug(f"Lost publish race for {staged.kind} entry {staged.key[:12]}")
            return existing

        logger.debug(f"Published {staged.kind} entry {staged.key[:12]}")
        return CacheEntry(kind=staged.kind, key=staged.key, path=final_dir, metadata=metadata)

    def _discard(self, path: Path) -> None:
        # Move aside first so a concurrent publisher never sees a half-deleted tree
        trash = self.root / STAGING_DIR / f"stale-{uuid.uuid4().hex[:8]}"
        try:
            os.rename(path, trash)
        except OSError:
            return
        shutil.rmtree(trash, ignore_errors=True)

    def list_entries(self, kind: Optional[str] = None) -> list[CacheEntry]:
        """All published entries, oldest first."""
        entries: list[CacheEntry] = []
        for k in (kind,) if kind else KINDS:
            kind_dir = self.root / k
            if not kind_dir.is_dir():
                continue
            for path in sorted(kind_dir.iterdir()):
                entry = self._read_entry(k, path.name, path)
                if entry is not None:
                    entries.append(entry)
        return sorted(entries, key=lambda e: e.created)

    def remove(self, entry: CacheEntry) -> None:
        shutil.rmtree(entry.path, ignore_errors=True)

    def clean_staging(self) -> int:
        """Remove staging directories left behind by killed processes."""
        staging_root = self.root / STAGING_DIR
        if not staging_root.is_dir():
            return 0
        removed = 0
        for path in staging_root.iterdir():
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
        return removed

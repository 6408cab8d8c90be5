"""Cache list and purge commands.

Lists and deletes entries of the artifact cache under the invocation's target
directory. Deleting an entry is always safe: the next build recomputes it
from the same inputs.
"""

import shutil
import time
from typing import Optional

from hermbuild.build.cache import ArtifactCache, CacheEntry
from hermbuild.output import log, log_detail, log_error, log_warning

_SECONDS_PER_DAY = 86400


def format_size(size_bytes: int) -> str:
    """Format bytes as KB/MB/GB (e.g. "95.1 MB")."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def describe(entry: CacheEntry) -> str:
    system = entry.metadata.get("system", "?")
    return f"{entry.kind:<8} {entry.key[:12]}  {system}"


def select_entries(cache: ArtifactCache, kind: Optional[str] = None, older_than_days: Optional[float] = None) -> list[CacheEntry]:
    """Entries matching the filters, oldest first."""
    entries = cache.list_entries(kind)
    if older_than_days is not None:
        cutoff = time.time() - older_than_days * _SECONDS_PER_DAY
        entries = [e for e in entries if e.created < cutoff]
    return entries


def list_command(cache: ArtifactCache, kind: Optional[str] = None) -> int:
    """Print every cache entry with its size."""
    entries = cache.list_entries(kind)
    if not entries:
        log(f"Cache is empty ({cache.root})")
        return 0

    total = 0
    log(f"Cache: {cache.root}")
    for entry in entries:
        size = entry.size_bytes()
        total += size
        created = time.strftime("%Y-%m-%d %H:%M", time.localtime(entry.created))
        log_detail(f"{describe(entry)}  {format_size(size):>9}  {created}")
    log(f"{len(entries)} entries, {format_size(total)}")
    return 0


class CachePurger:
    """Handles cache entry deletion."""

    def __init__(self, cache: ArtifactCache) -> None:
        self.cache = cache

    def purge(self, entries: list[CacheEntry], dry_run: bool) -> tuple[int, int, list[str]]:
        """Delete entries with error handling.

        Returns:
            Tuple of (deleted_count, failed_count, error_messages)
        """
        deleted_count = 0
        failed_count = 0
        error_messages: list[str] = []

        for entry in entries:
            size = format_size(entry.size_bytes())
            if dry_run:
                log(f"Would delete: {describe(entry)} ({size})")
                continue
            if not entry.path.exists():
                log_warning(f"Already deleted: {describe(entry)}")
                continue
            try:
                shutil.rmtree(entry.path)
            except OSError as e:
                error_msg = f"Failed to delete {entry.kind} {entry.key[:12]}: {e}"
                log_error(error_msg)
                error_messages.append(error_msg)
                failed_count += 1
                continue
            log(f"Deleted: {describe(entry)} ({size})")
            deleted_count += 1

        return deleted_count, failed_count, error_messages


def purge_command(
    cache: ArtifactCache,
    kind: Optional[str] = None,
    older_than_days: Optional[float] = None,
    dry_run: bool = False,
) -> int:
    """Delete cache entries. Returns the process exit code."""
    entries = select_entries(cache, kind, older_than_days)
    if not dry_run:
        stale = cache.clean_staging()
        if stale:
            log(f"Removed {stale} leftover staging directories")

    if not entries:
        log("Nothing to purge")
        return 0

    deleted, failed, _ = CachePurger(cache).purge(entries, dry_run)
    if not dry_run:
        log(f"Purged {deleted} entries" + (f", {failed} failed" if failed else ""))
    return 1 if failed else 0

"""
Toolchain acquisition from a distribution server.

A distribution publishes one manifest per channel at
`<dist_url>/channel-<channel>.json`:

    {
      "channel": "stable",
      "version": "1.79.0",
      "default_components": ["rustc", "cargo", "rust-std"],
      "components": {
        "rustc": {"url": "rustc-1.79.0.tar.gz", "sha256": "...", "bin": "bin"},
        ...
      }
    }

Component URLs may be relative to the manifest. Every archive is downloaded
with requests, verified against its SHA-256, extracted into a staging
directory and the finished channel directory is published with one rename.
Only network transfers are retried; a checksum mismatch or a 4xx response is
final.
"""

import hashlib
import json
import logging
import os
import shutil
import tarfile
import time
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Optional
from urllib.parse import urljoin

import requests

from hermbuild.errors import ToolchainUnavailable
from hermbuild.output import TimedLogger

logger = logging.getLogger(__name__)

CHANNEL_FILE = "channel.json"

# Download retry configuration
_MAX_DOWNLOAD_RETRIES = 3
_RETRY_BACKOFF_BASE = 1.0  # seconds; delays are 1s, 2s
_TIMEOUT = 30
_CHUNK_SIZE = 65536

# tarfile extraction filters arrived in 3.10.12
_HAS_EXTRACTION_FILTER = hasattr(tarfile, "data_filter")


@dataclass(frozen=True)
class RemoteComponent:
    name: str
    url: str
    sha256: str
    bin: str = "bin"


@dataclass(frozen=True)
class RemoteChannel:
    """Parsed channel manifest from a distribution server."""

    channel: str
    version: str
    default_components: tuple[str, ...]
    components: dict[str, RemoteComponent]


class _TransientError(Exception):
    pass


def _get(url: str, channel: str, stream: bool = False) -> requests.Response:
    """GET with retry and exponential backoff on transient failures.

    Connection errors, timeouts and 5xx responses are retried; a 4xx is
    returned to the caller immediately.
    """
    last_error: Exception | None = None
    for attempt in range(_MAX_DOWNLOAD_RETRIES):
        if attempt > 0:
            delay = _RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
            logger.info("Retrying %s in %.0fs (attempt %d/%d)", url, delay, attempt + 1, _MAX_DOWNLOAD_RETRIES)
            time.sleep(delay)
        try:
            response = requests.get(url, stream=stream, timeout=_TIMEOUT)
            if response.status_code >= 500:
                raise _TransientError(f"HTTP {response.status_code}")
            return response
        except (requests.ConnectionError, requests.Timeout, _TransientError) as e:
            last_error = e
            logger.warning("Download attempt %d/%d failed for %s: %s", attempt + 1, _MAX_DOWNLOAD_RETRIES, url, e)
    raise ToolchainUnavailable(channel, f"{url} unreachable: {last_error}")


def fetch_channel(dist_url: str, channel: str) -> RemoteChannel:
    """Download and parse the manifest of one channel.

    Raises:
        ToolchainUnavailable: If the manifest is missing, unreachable or malformed.
    """
    url = urljoin(dist_url.rstrip("/") + "/", f"channel-{channel}.json")
    response = _get(url, channel)

    if response.status_code == 404:
        raise ToolchainUnavailable(channel, f"channel not published at {url}")
    try:
        response.raise_for_status()
        data = response.json()
    except (requests.HTTPError, ValueError) as e:
        raise ToolchainUnavailable(channel, f"bad channel manifest at {url}: {e}") from e

    return parse_remote_channel(data, channel, base_url=url)


def parse_remote_channel(data: dict[str, Any], channel: str, base_url: str = "") -> RemoteChannel:
    try:
        components = {
            name: RemoteComponent(
                name=name,
                url=urljoin(base_url, entry["url"]),
                sha256=entry["sha256"].lower(),
                bin=entry.get("bin", "bin"),
            )
            for name, entry in data["components"].items()
        }
        return RemoteChannel(
            channel=data.get("channel", channel),
            version=data["version"],
            default_components=tuple(data.get("default_components", ())),
            components=components,
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ToolchainUnavailable(channel, f"malformed channel manifest: missing {e}") from e


def _download(component: RemoteComponent, dest: Path, channel: str) -> Path:
    """Stream one archive to dest and verify its checksum."""
    response = _get(component.url, channel, stream=True)
    if response.status_code >= 400:
        raise ToolchainUnavailable(channel, f"component '{component.name}' not downloadable (HTTP {response.status_code})", (component.name,))

    sha = hashlib.sha256()
    temp_file = Path(str(dest) + ".download")
    try:
        with open(temp_file, "wb") as f:
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
                    sha.update(chunk)
    except requests.RequestException as e:
        temp_file.unlink(missing_ok=True)
        raise ToolchainUnavailable(channel, f"download of '{component.name}' interrupted: {e}") from e

    digest = sha.hexdigest()
    if digest != component.sha256:
        temp_file.unlink(missing_ok=True)
        raise ToolchainUnavailable(channel, f"checksum mismatch for '{component.name}': expected {component.sha256}, got {digest}")

    os.replace(temp_file, dest)
    return dest


def _archive_name(url: str) -> str:
    return PurePosixPath(url.split("?", 1)[0]).name


def _check_member(name: str) -> None:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"Unsafe path in archive: {name}")


def extract_archive(archive: Path, dest: Path) -> Path:
    """Extract a .tar.gz/.tar.xz/.zip archive into dest.

    Archives wrapping everything in a single top-level directory (the usual
    release layout) are unwrapped.

    Returns:
        Directory holding the archive's contents.

    Raises:
        ValueError: On an unsupported format or an unsafe member path.
    """
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()

    if name.endswith((".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar")):
        with tarfile.open(archive, "r:*") as tar:
            for member in tar.getmembers():
                _check_member(member.name)
            if _HAS_EXTRACTION_FILTER:
                tar.extractall(dest, filter="data")
            else:
                # Members were already vetted by _check_member
                tar.extractall(dest)
    elif name.endswith(".zip"):
        with zipfile.ZipFile(archive, "r") as zf:
            for member in zf.namelist():
                _check_member(member)
            zf.extractall(dest)
    else:
        raise ValueError(f"Unsupported archive format: {archive.name}")

    items = list(dest.iterdir())
    if len(items) == 1 and items[0].is_dir():
        return items[0]
    return dest


def acquire_channel(
    dist_url: str,
    channel: str,
    components: tuple[str, ...],
    toolchains_dir: Path,
) -> Path:
    """Acquire a channel into the local toolchain store.

    Installs the channel's default components plus the requested ones and
    publishes `<toolchains_dir>/<channel>` atomically. If another process
    publishes the same channel first, its copy wins and ours is discarded.

    Returns:
        The published channel directory.

    Raises:
        ToolchainUnavailable: If the channel or a component cannot be acquired.
    """
    remote = fetch_channel(dist_url, channel)

    wanted = tuple(dict.fromkeys(remote.default_components + components))
    missing = tuple(c for c in wanted if c not in remote.components)
    if missing:
        raise ToolchainUnavailable(channel, f"components not in distribution: {', '.join(missing)}", missing)

    toolchains_dir.mkdir(parents=True, exist_ok=True)
    final_dir = toolchains_dir / channel
    staging = toolchains_dir / f".tmp-{channel}-{uuid.uuid4().hex[:8]}"
    downloads = staging / "downloads"
    downloads.mkdir(parents=True)

    try:
        entries: dict[str, dict[str, str]] = {}
        with TimedLogger(f"Acquiring toolchain {channel} {remote.version}") as timer:
            for name in wanted:
                component = remote.components[name]
                logger.info("Downloading %s component %s", channel, name)
                archive = _download(component, downloads / _archive_name(component.url), channel)
                try:
                    extracted = extract_archive(archive, staging / "extract" / name)
                except (ValueError, tarfile.TarError, zipfile.BadZipFile) as e:
                    raise ToolchainUnavailable(channel, f"cannot extract '{name}': {e}", (name,)) from e

                component_dir = staging / "components" / name
                component_dir.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(extracted), str(component_dir))
                entries[name] = {"path": f"components/{name}", "bin": component.bin, "sha256": component.sha256}
                timer.detail(f"{name} {component.sha256[:12]}")

        shutil.rmtree(downloads, ignore_errors=True)
        shutil.rmtree(staging / "extract", ignore_errors=True)

        write_channel_file(
            staging,
            {
                "channel": remote.channel,
                "version": remote.version,
                "default_components": list(remote.default_components),
                "components": entries,
            },
        )

        try:
            os.rename(staging, final_dir)
        except OSError:
            if (final_dir / CHANNEL_FILE).is_file():
                logger.debug("Channel %s published concurrently; discarding our copy", channel)
            else:
                raise
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    return final_dir


def write_channel_file(channel_dir: Path, data: dict[str, Any]) -> None:
    """Write channel.json atomically."""
    path = channel_dir / CHANNEL_FILE
    temp = path.with_suffix(".json.tmp")
    with open(temp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(temp, path)


def read_channel_file(channel_dir: Path) -> Optional[dict[str, Any]]:
    """Read channel.json, or None when the channel is not installed.

    Raises:
        ToolchainUnavailable: If the file cannot be read or is not a JSON object.
    """
    path = channel_dir / CHANNEL_FILE
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ToolchainUnavailable(channel_dir.name, f"malformed {CHANNEL_FILE}: {e}") from e
    if not isinstance(data, dict):
        raise ToolchainUnavailable(channel_dir.name, f"malformed {CHANNEL_FILE}: expected an object")
    return data

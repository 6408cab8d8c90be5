"""
Toolchain resolution.

A channel lives in the local toolchain store as

    <toolchains_dir>/<channel>/channel.json
    <toolchains_dir>/<channel>/components/<name>/...

where channel.json lists each installed component with its directory, its
bin subdirectory and the SHA-256 of the archive it came from. The resolver
turns a (channel, components) request into an immutable Toolchain whose
identity digest feeds every artifact key. Results are memoized per request so
all stages of one invocation see the same object.
"""

import hashlib
import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from hermbuild.errors import ToolchainUnavailable

from .acquire import CHANNEL_FILE, acquire_channel, read_channel_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolchainComponent:
    """One installed component.

    Attributes:
        name: Component name (e.g. "clippy")
        path: Installation directory
        bin_dir: Directory holding its executables, if any
        digest: SHA-256 of the archive the component was installed from
    """

    name: str
    path: Path
    bin_dir: Optional[Path]
    digest: str


@dataclass(frozen=True)
class Toolchain:
    """A resolved toolchain: channel, version and ordered components."""

    channel: str
    version: str
    root: Path
    components: tuple[ToolchainComponent, ...]

    @property
    def component_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.components)

    @property
    def bin_dirs(self) -> tuple[Path, ...]:
        """Executable directories in component order, without duplicates."""
        dirs: list[Path] = []
        for component in self.components:
            if component.bin_dir is not None and component.bin_dir not in dirs:
                dirs.append(component.bin_dir)
        return tuple(dirs)

    @property
    def identity(self) -> str:
        """Digest of channel, version and every component's name and content."""
        payload = json.dumps(
            {
                "channel": self.channel,
                "version": self.version,
                "components": [[c.name, c.digest] for c in self.components],
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def path_env(self, inherited_path: str = "") -> str:
        """PATH with the toolchain's bin dirs in front of inherited_path."""
        parts = [str(d) for d in self.bin_dirs]
        if inherited_path:
            parts.append(inherited_path)
        return os.pathsep.join(parts)

    def find_binary(self, name: str) -> Optional[Path]:
        """Locate an executable inside the toolchain's bin dirs."""
        if not self.bin_dirs:
            return None
        found = shutil.which(name, path=os.pathsep.join(str(d) for d in self.bin_dirs))
        return Path(found) if found else None

    def command(self, argv: Sequence[str]) -> list[str]:
        """Resolve argv[0] against the toolchain.

        Raises:
            ToolchainUnavailable: If the program is not provided by any component.
        """
        if not argv:
            raise ValueError("empty command")
        binary = self.find_binary(argv[0])
        if binary is None:
            raise ToolchainUnavailable(self.channel, f"'{argv[0]}' is not provided by components {', '.join(self.component_names)}")
        return [str(binary), *argv[1:]]

    def __str__(self) -> str:
        return f"{self.channel} ({self.version})"


class ToolchainResolver:
    """Resolves toolchains from the local store, acquiring missing channels.

    Args:
        toolchains_dir: Local toolchain store
        dist_url: Distribution server used when a channel is not installed
    """

    def __init__(self, toolchains_dir: Path, dist_url: Optional[str] = None) -> None:
        self.toolchains_dir = Path(toolchains_dir)
        self.dist_url = dist_url
        self._lock = threading.Lock()
        self._resolved: dict[tuple[str, tuple[str, ...]], Toolchain] = {}

    def resolve(self, channel: str, components: Sequence[str] = ()) -> Toolchain:
        """Resolve a channel with the requested optional components.

        Raises:
            ToolchainUnavailable: If the channel or a component cannot be located.
        """
        request = (channel, tuple(dict.fromkeys(components)))
        with self._lock:
            cached = self._resolved.get(request)
            if cached is not None:
                return cached

            toolchain = self._resolve_uncached(*request)
            self._resolved[request] = toolchain
            logger.info("Resolved toolchain %s [%s]", toolchain, toolchain.identity[:12])
            return toolchain

    def _resolve_uncached(self, channel: str, components: tuple[str, ...]) -> Toolchain:
        channel_dir = self.toolchains_dir / channel
        data = read_channel_file(channel_dir)

        if data is None:
            if not self.dist_url:
                raise ToolchainUnavailable(channel, f"not installed in {self.toolchains_dir} and no dist_url configured")
            channel_dir = acquire_channel(self.dist_url, channel, components, self.toolchains_dir)
            data = read_channel_file(channel_dir)
            if data is None:
                raise ToolchainUnavailable(channel, f"{CHANNEL_FILE} missing after acquisition")

        return self._load(channel, channel_dir, data, components)

    def _load(self, channel: str, channel_dir: Path, data: dict, components: tuple[str, ...]) -> Toolchain:
        try:
            installed: dict = data["components"]
            version = data["version"]
            defaults = tuple(data.get("default_components", ()))
        except (KeyError, TypeError) as e:
            raise ToolchainUnavailable(channel, f"malformed {CHANNEL_FILE}: missing {e}") from e
        if not isinstance(installed, dict) or not all(isinstance(entry, dict) for entry in installed.values()):
            raise ToolchainUnavailable(channel, f"malformed {CHANNEL_FILE}: components must map names to objects")

        wanted = tuple(dict.fromkeys(defaults + components))
        missing = tuple(name for name in wanted if name not in installed)
        if missing:
            raise ToolchainUnavailable(channel, f"missing components: {', '.join(missing)}", missing)

        resolved = []
        for name in wanted:
            entry = installed[name]
            path = channel_dir / entry.get("path", f"components/{name}")
            if not path.is_dir():
                raise ToolchainUnavailable(channel, f"component '{name}' directory not found: {path}", (name,))
            bin_name = entry.get("bin", "bin")
            bin_dir = path / bin_name if bin_name and (path / bin_name).is_dir() else None
            resolved.append(ToolchainComponent(name=name, path=path, bin_dir=bin_dir, digest=entry.get("sha256", "")))

        return Toolchain(channel=data.get("channel", channel), version=version, root=channel_dir, components=tuple(resolved))

"""Platform profiles and input composition.

A platform is identified by a PlatformKey (architecture x operating system,
written "x86_64-linux"). For each key the InputComposer produces a
PlatformProfile holding two input sets:

- native_inputs: needed only while building (e.g. pkg-config)
- runtime_inputs: needed while building and at run time (e.g. openssl)

Platform-specific additions are registered as InputExtras guarded by a
condition. Conditions are a tagged variant (OsCondition, ArchCondition,
SystemCondition) instead of scattered if/else branches, and they merge by one
rule: base + extras, additive only. An extra that repeats a base entry is
dropped, so a platform can never displace a base input.
"""

import hashlib
import json
import platform as _platform
from dataclasses import dataclass, field
from typing import Iterable, Sequence, Union

from hermbuild.errors import ConfigError

KNOWN_OS = ("linux", "darwin", "windows")
KNOWN_ARCH = ("x86_64", "aarch64", "i686", "riscv64")

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "x86": "i686",
}

_TARGET_TRIPLES = {
    ("x86_64", "linux"): "x86_64-unknown-linux-gnu",
    ("aarch64", "linux"): "aarch64-unknown-linux-gnu",
    ("x86_64", "darwin"): "x86_64-apple-darwin",
    ("aarch64", "darwin"): "aarch64-apple-darwin",
    ("x86_64", "windows"): "x86_64-pc-windows-msvc",
    ("aarch64", "windows"): "aarch64-pc-windows-msvc",
    ("i686", "linux"): "i686-unknown-linux-gnu",
    ("riscv64", "linux"): "riscv64gc-unknown-linux-gnu",
}


@dataclass(frozen=True, order=True)
class PlatformKey:
    """Operating system x architecture pair."""

    arch: str
    os: str

    @classmethod
    def parse(cls, text: str) -> "PlatformKey":
        """Parse "<arch>-<os>" (e.g. "aarch64-darwin").

        Raises:
            ConfigError: If the text is not a known arch/os pair.
        """
        arch, sep, os_name = text.strip().partition("-")
        arch = _ARCH_ALIASES.get(arch, arch)
        if not sep or arch not in KNOWN_ARCH or os_name not in KNOWN_OS:
            raise ConfigError(f"Invalid platform '{text}' (expected <arch>-<os>, e.g. x86_64-linux)")
        return cls(arch=arch, os=os_name)

    def __str__(self) -> str:
        return f"{self.arch}-{self.os}"

    @property
    def target_triple(self) -> str:
        """Compiler target triple for this platform."""
        try:
            return _TARGET_TRIPLES[(self.arch, self.os)]
        except KeyError:
            raise ConfigError(f"No target triple known for platform {self}") from None


DEFAULT_SYSTEMS: tuple[PlatformKey, ...] = (
    PlatformKey("x86_64", "linux"),
    PlatformKey("aarch64", "linux"),
    PlatformKey("x86_64", "darwin"),
    PlatformKey("aarch64", "darwin"),
)


def detect_host_platform() -> PlatformKey:
    """Return the PlatformKey of the machine we are running on."""
    os_name = _platform.system().lower()
    machine = _platform.machine().lower()
    return PlatformKey.parse(f"{machine}-{os_name}")


@dataclass(frozen=True)
class OsCondition:
    """Matches every architecture of one operating system."""

    os: str

    def matches(self, key: PlatformKey) -> bool:
        return key.os == self.os

    def __str__(self) -> str:
        return f"os={self.os}"


@dataclass(frozen=True)
class ArchCondition:
    """Matches one architecture on every operating system."""

    arch: str

    def matches(self, key: PlatformKey) -> bool:
        return key.arch == self.arch

    def __str__(self) -> str:
        return f"arch={self.arch}"


@dataclass(frozen=True)
class SystemCondition:
    """Matches exactly one platform."""

    key: PlatformKey

    def matches(self, key: PlatformKey) -> bool:
        return key == self.key

    def __str__(self) -> str:
        return f"system={self.key}"


PlatformCondition = Union[OsCondition, ArchCondition, SystemCondition]


def parse_condition(text: str) -> PlatformCondition:
    """Parse a condition written as "os=darwin", "arch=aarch64" or "system=x86_64-linux".

    Raises:
        ConfigError: If the condition is malformed.
    """
    tag, sep, value = text.strip().partition("=")
    tag, value = tag.strip(), value.strip()
    if not sep or not value:
        raise ConfigError(f"Invalid platform condition '{text}'")
    if tag == "os":
        if value not in KNOWN_OS:
            raise ConfigError(f"Unknown operating system '{value}' in condition '{text}'")
        return OsCondition(value)
    if tag == "arch":
        value = _ARCH_ALIASES.get(value, value)
        if value not in KNOWN_ARCH:
            raise ConfigError(f"Unknown architecture '{value}' in condition '{text}'")
        return ArchCondition(value)
    if tag == "system":
        return SystemCondition(PlatformKey.parse(value))
    raise ConfigError(f"Unknown condition type '{tag}' in '{text}'")


@dataclass(frozen=True)
class InputExtras:
    """Inputs added to every profile whose key matches the condition."""

    condition: PlatformCondition
    native: tuple[str, ...] = ()
    runtime: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlatformProfile:
    """Resolved build/runtime inputs for one platform.

    Attributes:
        key: Platform this profile was composed for
        native_inputs: Build-time-only inputs, base entries first
        runtime_inputs: Build- and run-time inputs, base entries first
        applied: Conditions whose extras were merged in
    """

    key: PlatformKey
    native_inputs: tuple[str, ...]
    runtime_inputs: tuple[str, ...]
    applied: tuple[str, ...] = field(default=())

    @property
    def identity(self) -> str:
        """Stable digest of the platform key and both input sets."""
        payload = json.dumps(
            {
                "key": str(self.key),
                "native": list(self.native_inputs),
                "runtime": list(self.runtime_inputs),
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def merge_inputs(base: Sequence[str], additions: Iterable[str]) -> tuple[str, ...]:
    """Append additions to base, dropping anything already present.

    Base entries keep their position; an addition can never replace one.
    """
    merged = list(dict.fromkeys(base))
    seen = set(merged)
    for item in additions:
        if item not in seen:
            merged.append(item)
            seen.add(item)
    return tuple(merged)


class InputComposer:
    """Composes PlatformProfiles from base inputs plus conditional extras."""

    def __init__(
        self,
        base_native: Sequence[str],
        base_runtime: Sequence[str],
        extras: Sequence[InputExtras] = (),
    ) -> None:
        self._base_native = tuple(base_native)
        self._base_runtime = tuple(base_runtime)
        self._extras = tuple(extras)

    @property
    def base_native(self) -> tuple[str, ...]:
        return self._base_native

    @property
    def base_runtime(self) -> tuple[str, ...]:
        return self._base_runtime

    def compose(self, key: PlatformKey) -> PlatformProfile:
        """Compose the profile for one platform.

        A key that matches no registered condition gets the base inputs only.
        """
        native = self._base_native
        runtime = self._base_runtime
        applied: list[str] = []

        for extra in self._extras:
            if not extra.condition.matches(key):
                continue
            native = merge_inputs(native, extra.native)
            runtime = merge_inputs(runtime, extra.runtime)
            applied.append(str(extra.condition))

        return PlatformProfile(
            key=key,
            native_inputs=merge_inputs(native, ()),
            runtime_inputs=merge_inputs(runtime, ()),
            applied=tuple(applied),
        )

    def compose_all(self, keys: Iterable[PlatformKey]) -> dict[PlatformKey, PlatformProfile]:
        """Compose profiles for several platforms."""
        return {key: self.compose(key) for key in keys}

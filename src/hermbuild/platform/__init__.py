"""Platform keys, conditions and input composition."""

from .profiles import (
    DEFAULT_SYSTEMS,
    ArchCondition,
    InputComposer,
    InputExtras,
    OsCondition,
    PlatformCondition,
    PlatformKey,
    PlatformProfile,
    SystemCondition,
    detect_host_platform,
    merge_inputs,
    parse_condition,
)

__all__ = [
    "DEFAULT_SYSTEMS",
    "ArchCondition",
    "InputComposer",
    "InputExtras",
    "OsCondition",
    "PlatformCondition",
    "PlatformKey",
    "PlatformProfile",
    "SystemCondition",
    "detect_host_platform",
    "merge_inputs",
    "parse_condition",
]

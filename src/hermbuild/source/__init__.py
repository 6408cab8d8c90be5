"""Source selection: role predicates, include rules and fingerprints."""

from .selector import (
    DEFAULT_MANIFEST_PATTERNS,
    IncludeRules,
    SourceFile,
    SourceSet,
    compute_fingerprint,
    manifest_fingerprint,
    select,
)

__all__ = [
    "DEFAULT_MANIFEST_PATTERNS",
    "IncludeRules",
    "SourceFile",
    "SourceSet",
    "compute_fingerprint",
    "manifest_fingerprint",
    "select",
]

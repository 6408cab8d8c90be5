"""Artifact cache, workspaces and the two build phases."""

from .cache import ArtifactCache, CacheEntry, make_key, tree_digest
from .deps_builder import DependencyArtifact, DependencyArtifactBuilder
from .package_builder import PackageArtifact, PackageBuilder, PackageOutcome
from .workspace import Workspace, materialize

__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "DependencyArtifact",
    "DependencyArtifactBuilder",
    "PackageArtifact",
    "PackageBuilder",
    "PackageOutcome",
    "Workspace",
    "make_key",
    "materialize",
    "tree_digest",
]

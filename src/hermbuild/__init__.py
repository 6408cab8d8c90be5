"""hermbuild - reproducible two-phase build orchestrator.

Builds one compiled package per invocation from a fingerprinted source set and
a pinned toolchain, caching the dependencies-only build separately from the
full package so that application edits never invalidate compiled dependencies.
"""

__version__ = "0.3.1"

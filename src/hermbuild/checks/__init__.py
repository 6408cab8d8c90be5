"""Verification checks: lint, format, package-build and test."""

from .aggregator import CheckAggregator, CheckKind, CheckReport, CheckResult, CheckStatus

__all__ = [
    "CheckAggregator",
    "CheckKind",
    "CheckReport",
    "CheckResult",
    "CheckStatus",
]

"""Unit tests for logging compliance across the codebase.

These tests enforce that production code uses the logging module for
diagnostics and hermbuild.output for user-facing lines, instead of print().
"""

import re
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).parent.parent.parent / "src" / "hermbuild"

# Modules that legitimately write user-facing output
OUTPUT_MODULES = ("cli.py", "output.py")


def _source_files() -> list[Path]:
    files = [p for p in SRC_DIR.rglob("*.py") if "__pycache__" not in p.parts]
    assert files, f"No Python files found in {SRC_DIR}"
    return files


def _code_lines(path: Path):
    for line_num, line in enumerate(path.read_text(encoding="utf-8").split("\n"), start=1):
        stripped = line.strip()
        # Skip comments and docstrings (simple check)
        if stripped.startswith("#") or '"""' in line or "'''" in line:
            continue
        yield line_num, line


class TestLoggingCompliance:
    """Test cases for logging vs print statement compliance."""

    def test_no_print_statements_in_production_code(self):
        """No print() calls outside the output modules."""
        violations = []
        for file_path in _source_files():
            if file_path.name in OUTPUT_MODULES:
                continue
            for line_num, line in _code_lines(file_path):
                if re.search(r"(?<![\w.])print\s*\(", line):
                    violations.append(f"{file_path}:{line_num}: {line.strip()}")

        if violations:
            pytest.fail(f"Found {len(violations)} print() calls in production code:\n" + "\n".join(violations) + "\n\nUse logging or hermbuild.output instead.")

    def test_no_direct_stdout_writes(self):
        """Only the CLI and output module write to stdout directly."""
        violations = []
        for file_path in _source_files():
            if file_path.name in OUTPUT_MODULES:
                continue
            for line_num, line in _code_lines(file_path):
                if re.search(r"\bstdout\s*\.\s*write\s*\(", line):
                    violations.append(f"{file_path}:{line_num}: {line.strip()}")

        if violations:
            pytest.fail(f"Found {len(violations)} stdout writes:\n" + "\n".join(violations))

    def test_module_loggers(self):
        """Modules calling logger.* define a module-level logger named after the module."""
        missing = []
        for file_path in _source_files():
            content = file_path.read_text(encoding="utf-8")
            if not re.search(r"\blogger\.(debug|info|warning|error|exception)\(", content):
                continue
            if "logger = logging.getLogger(__name__)" not in content:
                missing.append(str(file_path))
            elif not re.search(r"^import logging$", content, re.MULTILINE):
                missing.append(str(file_path))

        if missing:
            pytest.fail("Modules using logger without `logger = logging.getLogger(__name__)`:\n" + "\n".join(missing))

    def test_loggers_live_under_hermbuild_namespace(self):
        """getLogger(__name__) places every logger under the configurable 'hermbuild' namespace."""
        for file_path in _source_files():
            content = file_path.read_text(encoding="utf-8")
            for match in re.finditer(r"logging\.getLogger\(([^)]*)\)", content):
                argument = match.group(1).strip()
                assert argument in ("__name__", "ROOT_LOGGER", "name"), f"{file_path}: getLogger({argument})"

"""Pytest configuration and fixtures for hermbuild tests.

Tests never run a real compiler. The `fake_runner` fixture stands in for the
tool runner: it records every invocation and, for build invocations, writes
deterministic output into the target directory named by CARGO_TARGET_DIR so
builders have something to cache and publish.

This conftest also restores stdout/stderr after each test: Python 3.13 changed
how stdout/stderr are handled, causing "I/O operation on closed file" errors
during teardown (https://github.com/pytest-dev/pytest/issues/11439).
"""

import hashlib
import json
import logging
import os
import stat
import sys
import threading
import warnings
from pathlib import Path
from typing import Callable

import pytest

from hermbuild import output
from hermbuild.config.ini_parser import load_project_config
from hermbuild.config.invocation import ROOT_LOGGER, TOOLCHAINS_DIR_ENV, InvocationConfig
from hermbuild.config.model import ProjectConfig
from hermbuild.orchestrator import BuildOrchestrator
from hermbuild.platform.profiles import PlatformKey
from hermbuild.toolchain.resolver import ToolchainResolver
from hermbuild.toolchain.runner import ToolInvocation, ToolResult

# Suppress ResourceWarnings from file cleanup in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)

LINUX = PlatformKey("x86_64", "linux")
ARM_LINUX = PlatformKey("aarch64", "linux")
DARWIN = PlatformKey("aarch64", "darwin")

TOOLCHAIN_VERSION = "1.79.0"

# Component name -> executables it provides
FAKE_COMPONENTS = {
    "rustc": ["rustc"],
    "cargo": ["cargo"],
    "rust-std": [],
    "clippy": ["cargo-clippy", "clippy-driver"],
    "rustfmt": ["rustfmt", "cargo-fmt"],
    "rust-src": [],
    "rust-analyzer": ["rust-analyzer"],
}
DEFAULT_COMPONENTS = ["rustc", "cargo", "rust-std", "rustfmt"]

CARGO_TOML = """\
[package]
name = "lunatic"
version = "0.13.2"
edition = "2021"

[dependencies]
anyhow = "1"
"""

CARGO_LOCK = """\
version = 3

[[package]]
name = "anyhow"
version = "1.0.86"
"""

MAIN_RS = 'fn main() {\n    println!("lunatic");\n}\n'

PROJECT_INI = """\
[package]
name = lunatic

[sources]
aux_patterns =
    .*\\.wat

[inputs]
native = pkg-config
runtime = openssl, sqlite

[inputs:os=darwin]
runtime = Security, SystemConfiguration

[shell]
tools = cargo-nextest, mold
env =
    CARGO_INCREMENTAL=1
    RUST_LOG=lunatic=debug

[linker:x86_64-linux]
linker = clang
flags = -C link-arg=-fuse-ld=mold
"""


@pytest.fixture(autouse=True)
def _restore_stdio():  # noqa: PT004
    """Ensure stdout/stderr are always restored after each test."""
    yield

    if sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if sys.stderr.closed:
        sys.stderr = sys.__stderr__


@pytest.fixture(autouse=True)
def _reset_output():  # noqa: PT004
    """Reset module-level output state and detach hermbuild log handlers."""
    yield

    output._output_stream = None
    output.set_verbose(False)
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, "_hermbuild", False):
            root.removeHandler(handler)
    root.setLevel(logging.NOTSET)


def make_executable(path: Path, text: str = "#!/bin/sh\nexit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def install_channel(toolchains_dir: Path, channel: str = "stable", version: str = TOOLCHAIN_VERSION, components: dict | None = None) -> Path:
    """Lay out an installed channel the way acquire_channel() publishes one."""
    components = FAKE_COMPONENTS if components is None else components
    channel_dir = toolchains_dir / channel
    entries = {}
    for name, binaries in components.items():
        component_dir = channel_dir / "components" / name
        component_dir.mkdir(parents=True, exist_ok=True)
        for binary in binaries:
            make_executable(component_dir / "bin" / binary)
        digest = hashlib.sha256(f"{name}-{version}".encode()).hexdigest()
        entries[name] = {"path": f"components/{name}", "bin": "bin", "sha256": digest}

    data = {
        "channel": channel,
        "version": version,
        "default_components": [c for c in DEFAULT_COMPONENTS if c in components],
        "components": entries,
    }
    (channel_dir / "channel.json").write_text(json.dumps(data, indent=2), encoding="utf-8")
    return channel_dir


class FakeRunner:
    """ToolRunner double.

    Responses are keyed by the first part of the invocation label ("deps",
    "compile", "test", "lint", "format", "fmt"). Successful "deps" and
    "compile" invocations write output derived only from the workspace
    contents, so identical inputs give identical artifacts.
    """

    def __init__(self) -> None:
        self.invocations: list[ToolInvocation] = []
        self.responses: dict[str, tuple[int, str]] = {}
        self.cancelled = False
        self.on_run: Callable[[ToolInvocation], None] | None = None
        self._lock = threading.Lock()

    def respond(self, label: str, returncode: int = 0, output: str = "") -> None:
        self.responses[label] = (returncode, output)

    def calls(self, label: str) -> list[ToolInvocation]:
        with self._lock:
            return [i for i in self.invocations if i.label.split(":", 1)[0] == label]

    def run(self, invocation: ToolInvocation) -> ToolResult:
        with self._lock:
            self.invocations.append(invocation)
        if self.on_run is not None:
            self.on_run(invocation)

        kind = invocation.label.split(":", 1)[0]
        returncode, text = self.responses.get(kind, (0, ""))
        if returncode == 0 and kind in ("deps", "compile"):
            self._write_outputs(kind, invocation)
        return ToolResult(returncode=returncode, output=text)

    def cancel_all(self) -> None:
        self.cancelled = True

    def _write_outputs(self, kind: str, invocation: ToolInvocation) -> None:
        target = Path(invocation.env["CARGO_TARGET_DIR"])
        release = target / "release"
        release.mkdir(parents=True, exist_ok=True)

        if kind == "deps":
            manifests = sorted(p.relative_to(invocation.cwd).as_posix() for p in invocation.cwd.rglob("Cargo.*"))
            (release / "deps").mkdir(exist_ok=True)
            (release / "deps" / "libanyhow.rlib").write_text("\n".join(manifests), encoding="utf-8")
            return

        main = invocation.cwd / "src" / "main.rs"
        digest = hashlib.sha256(main.read_bytes() if main.exists() else b"").hexdigest()
        make_executable(release / "lunatic", f"#!/bin/sh\n# {digest}\necho lunatic\n")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def toolchains_dir(tmp_path: Path) -> Path:
    store = tmp_path / "toolchains"
    install_channel(store)
    return store


@pytest.fixture
def resolver(toolchains_dir: Path) -> ToolchainResolver:
    return ToolchainResolver(toolchains_dir)


@pytest.fixture
def toolchain(resolver: ToolchainResolver):
    return resolver.resolve("stable", ("rust-src", "rust-analyzer", "clippy"))


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small cargo project: manifest, lock file, sources, a .wat fixture and docs."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "tests" / "data").mkdir(parents=True)
    (root / "Cargo.toml").write_text(CARGO_TOML, encoding="utf-8")
    (root / "Cargo.lock").write_text(CARGO_LOCK, encoding="utf-8")
    (root / "src" / "main.rs").write_text(MAIN_RS, encoding="utf-8")
    (root / "tests" / "data" / "hello.wat").write_text("(module)\n", encoding="utf-8")
    (root / "README.md").write_text("# lunatic\n", encoding="utf-8")
    (root / "hermbuild.ini").write_text(PROJECT_INI, encoding="utf-8")
    return root


@pytest.fixture
def environ(tmp_path: Path, toolchains_dir: Path) -> dict[str, str]:
    return {
        "PATH": os.defpath,
        "HOME": str(tmp_path / "home"),
        TOOLCHAINS_DIR_ENV: str(toolchains_dir),
    }


@pytest.fixture
def invocation(project_dir: Path, environ: dict[str, str]) -> InvocationConfig:
    return InvocationConfig.from_env(project_dir, environ)


@pytest.fixture
def project(project_dir: Path) -> ProjectConfig:
    return load_project_config(project_dir)


@pytest.fixture
def orchestrator(project: ProjectConfig, invocation: InvocationConfig, fake_runner: FakeRunner) -> BuildOrchestrator:
    return BuildOrchestrator(project, invocation, runner=fake_runner, max_workers=4)

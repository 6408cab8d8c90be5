"""
Command-line interface for hermbuild.

This module provides the `hermbuild` CLI tool: every named output of the
build graph is a subcommand.

Examples:
    hermbuild build                       # Build the package for the host
    hermbuild build --system aarch64-linux
    hermbuild run -- --help               # Run the package's program
    hermbuild check                       # lint, format, package-build, test
    hermbuild check --all-systems         # ...for every configured system
    hermbuild develop                     # Enter the development shell
    hermbuild develop --print             # Print shell exports instead
    hermbuild fmt                         # Apply the canonical format
    hermbuild cache list
    hermbuild cache purge --older-than 30

Exit codes:
    0    success
    1    build or check failure
    2    configuration or usage error
    130  interrupted
"""

import argparse
import json
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Union

from rich.console import Console

from hermbuild import __version__, output
from hermbuild.build.cache import ArtifactCache
from hermbuild.checks.aggregator import CheckKind
from hermbuild.commands.purge import list_command, purge_command
from hermbuild.config.ini_parser import load_project_config
from hermbuild.config.invocation import InvocationConfig, configure_logging
from hermbuild.config.model import ProjectConfig
from hermbuild.errors import (
    BuildError,
    ConfigError,
    CyclicDependencyError,
    DependencyBuildFailed,
    GraphCancelledError,
    HermbuildError,
)
from hermbuild.graph.callbacks import LineCallback, ProgressCallback
from hermbuild.graph.progress_display import StageProgressDisplay
from hermbuild.orchestrator import BuildOrchestrator, check_stage
from hermbuild.platform.profiles import PlatformKey, detect_host_platform
from hermbuild.subprocess_utils import safe_run

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


@dataclass
class CommonArgs:
    """Options shared by every subcommand."""

    project_dir: Path
    verbose: bool = False
    no_tui: bool = False
    jobs: int = 4


@dataclass
class BuildArgs(CommonArgs):
    system: Optional[str] = None


@dataclass
class RunArgs(CommonArgs):
    system: Optional[str] = None
    program_args: list[str] = field(default_factory=list)


@dataclass
class CheckArgs(CommonArgs):
    systems: list[str] = field(default_factory=list)
    all_systems: bool = False


@dataclass
class DevelopArgs(CommonArgs):
    system: Optional[str] = None
    print_exports: bool = False
    as_json: bool = False


@dataclass
class FmtArgs(CommonArgs):
    check: bool = False


@dataclass
class CacheArgs(CommonArgs):
    action: str = "list"
    kind: Optional[str] = None
    older_than: Optional[float] = None
    dry_run: bool = False


AnyArgs = Union[BuildArgs, RunArgs, CheckArgs, DevelopArgs, FmtArgs, CacheArgs, CommonArgs]


class _Session:
    """Loaded configuration plus a progress display for one command."""

    def __init__(self, args: CommonArgs) -> None:
        self.args = args
        self.invocation = InvocationConfig.from_env(args.project_dir)
        configure_logging(self.invocation.log_spec, args.verbose)
        output.set_verbose(args.verbose)
        self.project: ProjectConfig = load_project_config(self.invocation.project_dir)
        self.display: Optional[StageProgressDisplay] = None

        callback: ProgressCallback
        if not (args.no_tui or self.invocation.no_tui) and sys.stderr.isatty():
            self.display = StageProgressDisplay(Console(stderr=True), self.project.package.name)
            callback = self.display
        else:
            callback = LineCallback()
        self.orchestrator = BuildOrchestrator(self.project, self.invocation, max_workers=args.jobs, callback=callback)

    @contextmanager
    def progress(self) -> Iterator[None]:
        if self.display is None:
            yield
            return
        self.display.start()
        try:
            yield
        finally:
            self.display.stop()


def _parse_system(text: Optional[str]) -> Optional[PlatformKey]:
    return PlatformKey.parse(text) if text else None


def build_command(args: BuildArgs) -> int:
    """Build the package (dependencies first, from cache when possible)."""
    session = _Session(args)
    key = _parse_system(args.system) or detect_host_platform()
    output.log_header("hermbuild", __version__)
    output.log(f"Building {session.project.package.name} for {key}")

    with session.progress():
        artifact = session.orchestrator.package(key)

    output.log_artifact("package", str(artifact.path), cached=artifact.cached)
    for rel in artifact.files:
        output.log_detail(rel, indent=8)
    output.log_build_complete(output.get_elapsed())
    return EXIT_OK


def run_command(args: RunArgs) -> int:
    """Build if needed, then run the package's program."""
    session = _Session(args)
    with session.progress():
        app = session.orchestrator.app(_parse_system(args.system))
    program_args = args.program_args
    if program_args and program_args[0] == "--":
        program_args = program_args[1:]
    result = safe_run(app.argv(program_args), stdin=None)
    return result.returncode


def check_command(args: CheckArgs) -> int:
    """Run every check; report each kind separately."""
    session = _Session(args)
    if args.all_systems:
        keys = list(session.project.systems)
    elif args.systems:
        keys = [PlatformKey.parse(s) for s in args.systems]
    else:
        keys = [detect_host_platform()]

    output.log_header("hermbuild", __version__)
    with session.progress():
        reports = session.orchestrator.checks(keys)

    failed = False
    for index, (key, report) in enumerate(reports.items(), start=1):
        output.log_phase(index, len(reports), f"Checks for {key}")
        for result in report.results:
            output.log_check(str(result.kind), result.passed, result.reason)
            if not result.passed and result.output:
                output.log_block(result.output if output.is_verbose() else "\n".join(result.output.splitlines()[-20:]))
        failed = failed or not report.passed

    if failed:
        output.log_error("Some checks failed")
        return EXIT_FAILURE
    output.log("All checks passed")
    return EXIT_OK


def develop_command(args: DevelopArgs) -> int:
    """Enter (or print) the development shell."""
    machine_readable = args.as_json or args.print_exports
    if machine_readable:
        # stdout carries the environment; progress lines go to stderr
        output.init_timer(sys.stderr)
    session = _Session(args)
    descriptor = session.orchestrator.dev_shell(_parse_system(args.system))

    for tool in descriptor.missing_tools():
        output.log_warning(f"Shell tool '{tool}' not found on PATH")

    if args.as_json:
        sys.stdout.write(json.dumps({"system": str(descriptor.profile.key), "tools": list(descriptor.tools), "env": descriptor.as_dict()}, indent=2) + "\n")
        return EXIT_OK
    if args.print_exports:
        sys.stdout.write(descriptor.to_shell_exports())
        return EXIT_OK

    shell = session.invocation.environ.get("SHELL", "/bin/sh")
    toolchain = descriptor.toolchain
    output.log(f"Entering development shell for {descriptor.profile.key} ({toolchain.channel} {toolchain.version})")
    result = safe_run([shell], env=descriptor.apply(session.invocation.environ), stdin=None)
    return result.returncode


def fmt_command(args: FmtArgs) -> int:
    """Apply the canonical format to the working tree (or only check it)."""
    session = _Session(args)
    if args.check:
        stage = check_stage(CheckKind.FORMAT, detect_host_platform())
        with session.progress():
            result = session.orchestrator.evaluate([stage]).result_of(stage)
        output.log_check(str(result.kind), result.passed, result.reason)
        if not result.passed:
            output.log_block(result.output)
        return EXIT_OK if result.passed else EXIT_FAILURE

    formatter = session.orchestrator.formatter()
    result = formatter.run(session.orchestrator.runner)
    if not result.ok:
        output.log_block(result.output)
        return EXIT_FAILURE
    return EXIT_OK


def cache_command(args: CacheArgs) -> int:
    """List or purge artifact cache entries."""
    invocation = InvocationConfig.from_env(args.project_dir)
    configure_logging(invocation.log_spec, args.verbose)
    cache = ArtifactCache(invocation.cache_dir)
    if args.action == "purge":
        return purge_command(cache, args.kind, args.older_than, args.dry_run)
    return list_command(cache, args.kind)


def show_command(args: CommonArgs) -> int:
    """Print the resolved project configuration and platform profiles."""
    session = _Session(args)
    project = session.project
    output.log(f"package   {project.package.name} (program {project.package.program_name})")
    output.log(f"toolchain {project.toolchain.channel} [{', '.join(project.toolchain.components)}]")
    output.log(f"sources   roles={','.join(project.sources.default_roles)} aux={','.join(project.sources.aux_patterns) or '-'}")
    output.log(f"target    {session.invocation.target_dir}")
    composer = project.inputs.composer()
    for key, profile in composer.compose_all(project.systems).items():
        output.log(f"{key}")
        output.log_detail(f"native:  {' '.join(profile.native_inputs) or '-'}")
        output.log_detail(f"runtime: {' '.join(profile.runtime_inputs) or '-'}")
        if profile.applied:
            output.log_detail(f"extras:  {', '.join(profile.applied)}")
    return EXIT_OK


def _report_error(e: HermbuildError, verbose: bool) -> None:
    output.log_error(str(e))
    if isinstance(e, (BuildError, DependencyBuildFailed)):
        tail = e.tool_output if verbose else e.output_tail()
        if tail:
            output.log_block(tail)


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory containing hermbuild.ini (default: current directory)",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    common.add_argument("--no-tui", action="store_true", help="Disable the live progress display")
    common.add_argument("-j", "--jobs", type=int, default=os.cpu_count() or 4, help="Maximum concurrently running stages")

    parser = argparse.ArgumentParser(prog="hermbuild", description="Reproducible two-phase build orchestrator")
    parser.add_argument("--version", action="version", version=f"hermbuild {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name in ("build", "package", "packages"):
        p = subparsers.add_parser(name, parents=[common], help="Build the package" if name == "build" else argparse.SUPPRESS)
        p.add_argument("--system", help="Platform to build for (e.g. x86_64-linux)")

    p = subparsers.add_parser("run", parents=[common], help="Run the package's program")
    p.add_argument("--system", help="Platform to build for")
    p.add_argument("program_args", nargs=argparse.REMAINDER, help="Arguments passed to the program")

    p = subparsers.add_parser("check", parents=[common], help="Run lint, format, package-build and test checks")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--system", dest="systems", action="append", default=[], help="Platform to check (repeatable)")
    group.add_argument("--all-systems", action="store_true", help="Check every configured system")

    p = subparsers.add_parser("develop", parents=[common], help="Enter the development shell")
    p.add_argument("--system", help="Platform whose shell to compose")
    fmt_group = p.add_mutually_exclusive_group()
    fmt_group.add_argument("--print", dest="print_exports", action="store_true", help="Print POSIX export lines")
    fmt_group.add_argument("--json", dest="as_json", action="store_true", help="Print the environment as JSON")

    p = subparsers.add_parser("fmt", parents=[common], help="Apply the canonical format")
    p.add_argument("--check", action="store_true", help="Only check, do not modify files")

    p = subparsers.add_parser("cache", parents=[common], help="Inspect or purge the artifact cache")
    cache_sub = p.add_subparsers(dest="action", required=True)
    for action in ("list", "purge"):
        cp = cache_sub.add_parser(action, parents=[common])
        cp.add_argument("--kind", choices=("deps", "package"), help="Only entries of this kind")
        if action == "purge":
            cp.add_argument("--older-than", type=float, metavar="DAYS", help="Only entries older than DAYS")
            cp.add_argument("--dry-run", action="store_true", help="Show what would be deleted")

    subparsers.add_parser("show", parents=[common], help="Show project configuration and platform profiles")
    return parser


def _to_args(ns: argparse.Namespace) -> AnyArgs:
    common = {"project_dir": ns.project_dir, "verbose": ns.verbose, "no_tui": ns.no_tui, "jobs": ns.jobs}
    if ns.command in ("build", "package", "packages"):
        return BuildArgs(**common, system=ns.system)
    if ns.command == "run":
        return RunArgs(**common, system=ns.system, program_args=list(ns.program_args))
    if ns.command == "check":
        return CheckArgs(**common, systems=list(ns.systems), all_systems=ns.all_systems)
    if ns.command == "develop":
        return DevelopArgs(**common, system=ns.system, print_exports=ns.print_exports, as_json=ns.as_json)
    if ns.command == "fmt":
        return FmtArgs(**common, check=ns.check)
    if ns.command == "cache":
        return CacheArgs(
            **common,
            action=ns.action,
            kind=ns.kind,
            older_than=getattr(ns, "older_than", None),
            dry_run=getattr(ns, "dry_run", False),
        )
    return CommonArgs(**common)


def _dispatch(args: AnyArgs) -> int:
    if isinstance(args, BuildArgs):
        return build_command(args)
    if isinstance(args, RunArgs):
        return run_command(args)
    if isinstance(args, CheckArgs):
        return check_command(args)
    if isinstance(args, DevelopArgs):
        return develop_command(args)
    if isinstance(args, FmtArgs):
        return fmt_command(args)
    if isinstance(args, CacheArgs):
        return cache_command(args)
    return show_command(args)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point. Returns the process exit code."""
    parser = _build_parser()
    try:
        ns = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else EXIT_USAGE

    args = _to_args(ns)
    try:
        return _dispatch(args)
    except (ConfigError, CyclicDependencyError) as e:
        output.log_error(str(e))
        return EXIT_USAGE
    except GraphCancelledError:
        output.log_warning("Interrupted")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        output.log_warning("Interrupted")
        return EXIT_INTERRUPTED
    except HermbuildError as e:
        _report_error(e, args.verbose)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())

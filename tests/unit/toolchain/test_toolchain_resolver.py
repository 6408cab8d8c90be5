"""Tests for toolchain resolution from the local store."""

import os
import threading

import pytest

from conftest import FAKE_COMPONENTS, TOOLCHAIN_VERSION, install_channel
from hermbuild.errors import ToolchainUnavailable
from hermbuild.toolchain.resolver import ToolchainResolver


class TestToolchainResolver:
    """Test ToolchainResolver."""

    def test_resolves_defaults_plus_requested(self, resolver):
        """Default components come first, then requested ones, without duplicates."""
        toolchain = resolver.resolve("stable", ("clippy", "rustc", "rust-src"))

        assert toolchain.channel == "stable"
        assert toolchain.version == TOOLCHAIN_VERSION
        assert toolchain.component_names == ("rustc", "cargo", "rust-std", "rustfmt", "clippy", "rust-src")

    def test_bin_dirs_only_for_components_with_executables(self, resolver):
        """Components without a bin directory contribute nothing to PATH."""
        toolchain = resolver.resolve("stable", ("rust-src",))

        names = [d.parent.name for d in toolchain.bin_dirs]
        assert "rust-src" not in names
        assert "rust-std" not in names
        assert names[:2] == ["rustc", "cargo"]

    def test_resolution_is_memoized(self, resolver):
        """Equal requests return the same Toolchain object."""
        first = resolver.resolve("stable", ("clippy",))
        second = resolver.resolve("stable", ("clippy",))
        assert first is second

    def test_concurrent_resolution_returns_one_object(self, resolver):
        """Stages resolving in parallel share one Toolchain."""
        results = []

        def worker():
            results.append(resolver.resolve("stable", ("clippy",)))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(r) for r in results}) == 1

    def test_identity_depends_on_components(self, resolver):
        """Different component sets give different identities."""
        a = resolver.resolve("stable", ("clippy",))
        b = resolver.resolve("stable", ("clippy", "rust-src"))
        assert a.identity != b.identity

    def test_identity_stable_across_resolvers(self, toolchains_dir):
        """Identity is a pure function of channel, version and components."""
        a = ToolchainResolver(toolchains_dir).resolve("stable", ("clippy",))
        b = ToolchainResolver(toolchains_dir).resolve("stable", ("clippy",))
        assert a.identity == b.identity

    def test_identity_changes_with_version(self, tmp_path):
        """A new channel version yields a new identity."""
        install_channel(tmp_path / "a", version="1.79.0")
        install_channel(tmp_path / "b", version="1.80.0")
        a = ToolchainResolver(tmp_path / "a").resolve("stable")
        b = ToolchainResolver(tmp_path / "b").resolve("stable")
        assert a.identity != b.identity

    def test_missing_component_raises(self, tmp_path):
        """A requested component that is not installed is reported by name."""
        components = {k: v for k, v in FAKE_COMPONENTS.items() if k != "clippy"}
        install_channel(tmp_path, components=components)

        with pytest.raises(ToolchainUnavailable) as exc_info:
            ToolchainResolver(tmp_path).resolve("stable", ("clippy",))
        assert exc_info.value.missing == ("clippy",)
        assert exc_info.value.channel == "stable"

    def test_missing_channel_without_dist_url_raises(self, tmp_path):
        """An uninstalled channel with nowhere to fetch it from is unavailable."""
        with pytest.raises(ToolchainUnavailable, match="nightly"):
            ToolchainResolver(tmp_path).resolve("nightly")

    def test_malformed_channel_file_raises(self, tmp_path):
        """A channel.json without a version is reported as malformed."""
        channel_dir = tmp_path / "stable"
        channel_dir.mkdir()
        (channel_dir / "channel.json").write_text('{"components": {}}')

        with pytest.raises(ToolchainUnavailable, match="malformed"):
            ToolchainResolver(tmp_path).resolve("stable")

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[1, 2]",
            '{"version": "1.79.0", "components": ["rustc"]}',
            '{"version": "1.79.0", "components": {"rustc": "components/rustc"}}',
        ],
    )
    def test_corrupt_channel_file_is_unavailable(self, tmp_path, content):
        """Unparseable or mistyped channel.json is a typed error, never a traceback."""
        channel_dir = tmp_path / "stable"
        channel_dir.mkdir()
        (channel_dir / "channel.json").write_text(content)

        with pytest.raises(ToolchainUnavailable, match="malformed channel.json"):
            ToolchainResolver(tmp_path).resolve("stable")


class TestToolchain:
    """Test the resolved Toolchain value."""

    def test_command_resolves_binary(self, toolchain):
        """argv[0] is replaced by the component's executable."""
        argv = toolchain.command(["cargo", "build", "--release"])
        assert argv[0].endswith(os.path.join("cargo", "bin", "cargo"))
        assert argv[1:] == ["build", "--release"]

    def test_command_for_unknown_binary_raises(self, toolchain):
        """A program no component provides is a toolchain error."""
        with pytest.raises(ToolchainUnavailable, match="make"):
            toolchain.command(["make"])

    def test_path_env_prepends_bin_dirs(self, toolchain):
        """Toolchain bin dirs come before the inherited PATH."""
        path = toolchain.path_env("/usr/bin")
        parts = path.split(os.pathsep)
        assert parts[-1] == "/usr/bin"
        assert parts[0] == str(toolchain.bin_dirs[0])

    def test_str(self, toolchain):
        """String form shows channel and version."""
        assert str(toolchain) == f"stable ({TOOLCHAIN_VERSION})"

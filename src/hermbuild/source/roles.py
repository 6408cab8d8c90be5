"""Default-role source predicates.

A role is a named predicate over (relative POSIX path, file kind) deciding
whether an entry belongs to the build-relevant sources. Roles never look at
anything but the path string and the kind, so the same tree always selects the
same files regardless of timestamps or version-control state.

File kinds:
    "regular", "directory", "symlink", "unknown"
"""

from typing import Callable

from hermbuild.errors import ConfigError

RolePredicate = Callable[[str, str], bool]

# Never descended into, at any depth
VCS_DIRS = frozenset({".git", ".hg", ".svn", ".jj", ".direnv"})

# Build output locations, only at the top of the tree
OUTPUT_DIRS = frozenset({"target", ".hermbuild", "result"})


def _basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _parent_name(path: str) -> str:
    parts = path.split("/")
    return parts[-2] if len(parts) > 1 else ""


def is_source_dir(path: str) -> bool:
    """False for VCS metadata at any depth and build outputs at the top."""
    base = _basename(path)
    if base in VCS_DIRS:
        return False
    if "/" not in path and base in OUTPUT_DIRS:
        return False
    return True


def cargo_sources(path: str, kind: str) -> bool:
    """Build-manifest sources of a cargo workspace.

    Keeps every source directory, Rust sources, TOML manifests, the lock file
    and the legacy `.cargo/config` file.
    """
    if kind == "directory":
        return is_source_dir(path)
    if kind not in ("regular", "symlink"):
        return False

    base = _basename(path)
    if base.endswith((".rs", ".toml")):
        return True
    if base == "Cargo.lock":
        return True
    return _parent_name(path) == ".cargo" and base == "config"


def all_sources(path: str, kind: str) -> bool:
    """Every file except VCS metadata, build outputs and editor leftovers."""
    if kind == "directory":
        return is_source_dir(path)
    if kind not in ("regular", "symlink"):
        return False

    base = _basename(path)
    if base.endswith(("~", ".swp", ".swo")) or base.startswith(".#"):
        return False
    return True


ROLES: dict[str, RolePredicate] = {
    "cargo": cargo_sources,
    "all": all_sources,
}


def get_role(name: str) -> RolePredicate:
    """Look up a role predicate by name.

    Raises:
        ConfigError: If no role with that name is registered.
    """
    try:
        return ROLES[name]
    except KeyError:
        known = ", ".join(sorted(ROLES))
        raise ConfigError(f"Unknown source role '{name}' (known roles: {known})") from None

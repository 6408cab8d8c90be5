"""CLI subcommands that operate on the artifact cache."""

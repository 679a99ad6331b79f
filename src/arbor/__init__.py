"""Arbor - per-branch worktree lifecycle with crash-safe bookkeeping."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("arbor-cli")
except PackageNotFoundError:
    # Running from source without install
    __version__ = "0.0.0+dev"

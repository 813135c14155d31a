"""
Analysis Manager - external tool harness for DMS analysis plugins.

This package exposes the run state machine, process runner, console output
parsing, checkpointing and result post-processing shared by the tool integrations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("analysis-manager")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]

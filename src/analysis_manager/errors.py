from __future__ import annotations


class AnalysisManagerError(Exception):
    """Base class for unexpected harness conditions."""


class ConfigError(AnalysisManagerError):
    """Raised when a configuration or job parameter file cannot be used."""


class ConcatenationError(AnalysisManagerError):
    """Raised when per-job result files cannot be merged."""

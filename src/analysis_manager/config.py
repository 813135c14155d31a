from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError


@dataclass
class HarnessSettings:
    """Timing and limits applied to every tool invocation."""

    poll_interval_seconds: float = 4.0
    status_publish_interval_seconds: float = 30.0
    checkpoint_interval_seconds: float = 60.0
    max_inline_argument_length: int = 250
    progress_log_interval_minutes: float = 30.0
    verbose_progress_log_interval_minutes: float = 5.0
    failed_results_folder: str = "DMS_FailedResults"


@dataclass
class PathsConfig:
    """Filesystem layout shared by the manager and its tool integrations."""

    root: Path
    data_dir: Path
    transfer_dir: Path
    failed_results_dir: Path
    db_path: Path


@dataclass
class AppConfig:
    """Top level configuration consumed by the CLI and the run state machine."""

    environment: str = "local"
    verbose: bool = False
    paths: PathsConfig = field(default_factory=lambda: build_paths(Path.cwd()))
    harness: HarnessSettings = field(default_factory=HarnessSettings)
    tools: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable copy of the config for persistence."""
        payload = asdict(self)
        payload["paths"] = {key: str(value) for key, value in asdict(self.paths).items()}
        return payload

    def tool_path(self, name: str) -> Optional[Path]:
        value = self.tools.get(name)
        return Path(value).expanduser() if value else None


def build_paths(root: Path, failed_results_folder: str = "DMS_FailedResults") -> PathsConfig:
    """Construct the default filesystem layout under *root*."""
    data_dir = root / "var"
    return PathsConfig(
        root=root,
        data_dir=data_dir,
        transfer_dir=data_dir / "transfer",
        failed_results_dir=data_dir / failed_results_folder,
        db_path=data_dir / "runs.sqlite",
    )


def load_config(path: Optional[Path], verbose: bool = False) -> AppConfig:
    """
    Load configuration from *path* if provided, otherwise use the defaults.

    The configuration file is expected to be JSON. Unspecified fields fall back to
    the defaults baked into the dataclasses above; unknown keys are ignored.
    """
    config = AppConfig()
    config.paths = build_paths(Path.cwd())
    config.verbose = verbose

    if path is None:
        return config

    try:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Configuration file {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")

    _apply_config_updates(config, data)
    config.verbose = verbose or bool(data.get("verbose", config.verbose))
    return config


def _apply_config_updates(config: AppConfig, payload: Dict[str, Any]) -> None:
    """Update *config* in-place using keys from the *payload* dict."""
    if "environment" in payload:
        config.environment = payload["environment"]

    if "harness" in payload:
        for key, value in payload["harness"].items():
            if hasattr(config.harness, key):
                setattr(config.harness, key, value)

    if "paths" in payload:
        override = payload["paths"]
        root = Path(override.get("root", config.paths.root))
        paths = build_paths(root, config.harness.failed_results_folder)
        for key in ("data_dir", "transfer_dir", "failed_results_dir", "db_path"):
            if key in override:
                setattr(paths, key, Path(override[key]))
        config.paths = paths
    elif "harness" in payload and "failed_results_folder" in payload["harness"]:
        config.paths.failed_results_dir = config.paths.data_dir / config.harness.failed_results_folder

    if "tools" in payload:
        config.tools.update({str(name): str(value) for name, value in payload["tools"].items()})

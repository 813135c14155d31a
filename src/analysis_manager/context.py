from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .config import HarnessSettings
from .errors import ConfigError


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class JobContext:
    """
    Everything one job execution needs, passed explicitly to each component.

    A context is never shared between jobs; ``derive`` creates the per-sub-job
    copies used by aggregator integrations.
    """

    job: int
    dataset: str
    work_dir: Path
    output_folder: str = ""
    dataset_folder: str = ""
    step_tool: str = ""
    program_path: Optional[Path] = None
    params: Dict[str, Any] = field(default_factory=dict)
    settings: HarnessSettings = field(default_factory=HarnessSettings)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    verbose: bool = False

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        if not self.dataset_folder:
            self.dataset_folder = self.dataset
        if not self.output_folder:
            self.output_folder = f"{self.step_tool or 'Results'}_Job{self.job}"

    def get_param(self, name: str, default: Any = None) -> Any:
        value = self.params.get(name)
        if value is None or value == "":
            return default
        return value

    def get_int_param(self, name: str, default: int = 0) -> int:
        value = self.get_param(name)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def get_float_param(self, name: str, default: float = 0.0) -> float:
        value = self.get_param(name)
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def get_bool_param(self, name: str, default: bool = False) -> bool:
        value = self.get_param(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def derive(self, **changes: Any) -> "JobContext":
        """Copy this context for a sub-job; the cancellation event is shared."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], work_dir: Path, settings: Optional[HarnessSettings] = None) -> "JobContext":
        try:
            job = int(payload["job"])
            dataset = str(payload["dataset"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Job parameters must define an integer 'job' and a 'dataset': {exc}") from exc
        program = payload.get("program_path")
        return cls(
            job=job,
            dataset=dataset,
            work_dir=work_dir,
            output_folder=payload.get("output_folder", ""),
            dataset_folder=payload.get("dataset_folder", ""),
            step_tool=payload.get("step_tool", ""),
            program_path=Path(program) if program else None,
            params=dict(payload.get("params", {})),
            settings=settings or HarnessSettings(),
        )

    @classmethod
    def from_file(cls, path: Path, work_dir: Path, settings: Optional[HarnessSettings] = None) -> "JobContext":
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Job parameter file {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Job parameter file {path} must contain a JSON object")
        return cls.from_dict(payload, work_dir, settings)

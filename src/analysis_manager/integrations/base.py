from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Sequence, Union

from ..checkpoint import ResumePointScanner
from ..collaborators import ResourceProvider
from ..console import MarkerTable
from ..context import JobContext
from ..models import CheckpointKey, CloseoutCode, RunStatus, RunRequest, ValidationFailure
from ..postprocess import build_manifest


class InputKind(str, Enum):
    PARAM = "param"
    DATA = "data"


@dataclass(frozen=True)
class RequiredInput:
    path: Path
    kind: InputKind
    description: str = ""

    def missing_failure(self) -> ValidationFailure:
        label = self.description or self.path.name
        if self.kind is InputKind.PARAM:
            return ValidationFailure(CloseoutCode.NO_PARAM_FILE, f"Parameter file not found: {label}")
        return ValidationFailure(CloseoutCode.FILE_NOT_FOUND, f"Input file not found: {label}")


@dataclass(frozen=True)
class UnitVocabulary:
    """Wording used when units fail, e.g. ``"3 / 10 scans had no peaks"``."""

    plural: str = "units"
    lacking: str = "had no data"
    no_data_message: str = "No usable data"
    none_succeeded: str = "None of the units had data"
    single_failed: str = "Unit did not have data"

    def partial_failure(self, failed: int, total: int) -> str:
        if total <= 0:
            return f"{failed} {self.plural} {self.lacking}"
        return f"{failed} / {total} {self.plural} {self.lacking}"

    def all_failed(self, total: int) -> str:
        return self.single_failed if total == 1 else self.none_succeeded


class Integration:
    """
    Strategy describing how one external tool is driven by the run state machine.

    Subclasses supply the marker table, required inputs, argument construction and
    the output descriptor; optional hooks cover status files, checkpoints and
    post-processing.
    """

    name: str = "tool"
    marker_table: MarkerTable = MarkerTable(rules=())
    vocabulary: UnitVocabulary = UnitVocabulary()
    known_states: FrozenSet[str] = frozenset()
    console_output_file: Optional[str] = None
    status_file: Optional[str] = None
    resume_scanner: Optional[ResumePointScanner] = None
    poll_interval_seconds: Optional[float] = None
    launch_progress: float = 0.0
    finished_progress: float = 0.0
    result_skip_patterns: Sequence[str] = ()

    def required_inputs(self, context: JobContext) -> List[RequiredInput]:
        return []

    def retrieve_resources(self, context: JobContext, provider: ResourceProvider) -> Optional[ValidationFailure]:
        return None

    def build_request(self, context: JobContext, resume_from: Optional[int] = None) -> Union[RunRequest, ValidationFailure]:  # pragma: no cover - documentation method
        raise NotImplementedError

    def count_units(self, context: JobContext) -> int:
        return 0

    def monitored_file(self, context: JobContext) -> Optional[Path]:
        """File whose text is parsed with the marker table on each tick."""
        name = self.status_file or self.console_output_file
        return context.work_dir / name if name else None

    def checkpoint_key(self, context: JobContext) -> Optional[CheckpointKey]:
        return None

    def checkpoint_artifact(self, context: JobContext) -> Optional[Path]:
        return None

    def map_progress(self, percent: float) -> float:
        return percent

    def check_final_state(self, context: JobContext, status: RunStatus) -> Optional[str]:
        """Return an error message when the tool's final state means failure."""
        return None

    def post_process(self, context: JobContext, status: RunStatus, code: CloseoutCode) -> Optional[str]:
        """Shape raw outputs into the expected artifact set; returns an error message on failure."""
        return None

    def result_manifest(self, context: JobContext) -> List[Path]:
        return build_manifest(context.work_dir, self.result_skip_patterns)

    def poll_interval(self, context: JobContext) -> float:
        default = self.poll_interval_seconds or context.settings.poll_interval_seconds
        return context.get_float_param("poll_interval_seconds", default)

    def program_path(self, context: JobContext) -> Optional[Path]:
        return context.program_path

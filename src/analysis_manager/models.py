"""Shared data models for the tool harness."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MIN_POLL_INTERVAL_SECONDS = 0.25
MIN_MAX_RUNTIME_SECONDS = 15


class CloseoutCode(int, Enum):
    """Terminal codes understood by the job-orchestration framework."""

    SUCCESS = 0
    FAILED = 1
    NO_PARAM_FILE = 7
    FILE_NOT_FOUND = 14
    NO_DATA = 20


class FailureKind(str, Enum):
    VALIDATION = "validation-failure"
    LAUNCH = "launch-failure"
    RUNTIME = "runtime-failure"
    NO_USABLE_OUTPUT = "no-usable-output"
    PARTIAL_DATA_WARNING = "partial-data-warning"


class RunState(str, Enum):
    """Lifecycle states of a single tool invocation."""

    IDLE = "idle"
    VALIDATING = "validating"
    LAUNCHING = "launching"
    RUNNING = "running"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NO_DATA = "no-data"


class EventKind(str, Enum):
    PROGRESS = "progress"
    WARNING = "warning"
    ERROR = "error"
    STATE_CHANGE = "state-change"
    UNIT_COUNT = "unit-count"
    UNIT_FAILURE = "unit-failure"
    UNRECOGNIZED = "unrecognized"


class UnitRange(BaseModel):
    """Inclusive range of units (scans, spectra) a tool should process."""

    model_config = ConfigDict(frozen=True)

    first: int = Field(..., ge=0)
    last: Optional[int] = Field(default=None, description="None means through the final unit.")


class CheckpointKey(BaseModel):
    """Identity of a checkpoint in the durable transfer location."""

    model_config = ConfigDict(frozen=True)

    dataset_folder: str
    output_folder: str
    artifact_name: str
    job: int = 0


class OutputDescriptor(BaseModel):
    """Describes the artifact a successful run is expected to leave behind."""

    model_config = ConfigDict(frozen=True)

    pattern: str = Field(..., description="Glob matched against file names in the working directory.")
    min_size_bytes: int = Field(default=1, ge=0)
    min_count: int = Field(default=1, ge=1)
    search_subdirectories: bool = False


class RunRequest(BaseModel):
    """One immutable tool invocation."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    executable: Path
    arguments: str = ""
    working_dir: Path
    output: OutputDescriptor
    max_runtime_seconds: int = Field(default=0, description="0 disables the runtime limit.")
    poll_interval_seconds: float = 4.0
    checkpoint_key: Optional[CheckpointKey] = None
    unit_range: Optional[UnitRange] = None
    console_output_file: Optional[str] = None
    write_console_output_incrementally: bool = True
    nonzero_exit_is_failure: bool = True
    argument_file_switch: str = "/R:"

    @field_validator("max_runtime_seconds")
    @classmethod
    def _clamp_runtime(cls, value: int) -> int:
        if value <= 0:
            return 0
        return max(value, MIN_MAX_RUNTIME_SECONDS)

    @field_validator("poll_interval_seconds")
    @classmethod
    def _clamp_poll_interval(cls, value: float) -> float:
        return max(float(value), MIN_POLL_INTERVAL_SECONDS)

    @property
    def console_output_path(self) -> Optional[Path]:
        if not self.console_output_file:
            return None
        return self.working_dir / self.console_output_file


@dataclass(frozen=True)
class ConsoleOutputEvent:
    """A single classified console line; lives for one poll tick."""

    kind: EventKind
    text: str = ""
    value: Optional[float] = None
    line_number: int = 0


@dataclass(frozen=True)
class ValidationFailure:
    """Typed failure returned by validation and argument construction."""

    code: CloseoutCode
    message: str
    kind: FailureKind = FailureKind.VALIDATION


@dataclass
class RunStatus:
    """Mutable status of the run in progress."""

    percent_complete: float = 0.0
    state_label: str = "unknown"
    state_recognized: bool = True
    units_processed: int = 0
    units_total: int = 0
    units_failed: int = 0
    error_message: str = ""
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def update_progress(self, percent: Optional[float]) -> float:
        """Raise the progress to *percent*; regressions are ignored."""
        if percent is None:
            return self.percent_complete
        clamped = min(max(float(percent), 0.0), 100.0)
        if clamped > self.percent_complete:
            self.percent_complete = clamped
        return self.percent_complete

    def update_units_processed(self, count: int) -> int:
        if count > self.units_processed:
            self.units_processed = count
        return self.units_processed

    def append_error(self, message: str) -> None:
        if not message:
            return
        if not self.error_message:
            self.error_message = message
        elif message not in self.error_message:
            self.error_message = f"{self.error_message}; {message}"

    def add_warning(self, message: str) -> None:
        if message and message not in self.warnings:
            self.warnings.append(message)

    def snapshot(self) -> "RunStatus":
        return copy.deepcopy(self)


@dataclass
class CloseoutResult:
    """Terminal classification of a tool invocation."""

    code: CloseoutCode
    message: str = ""
    evaluation_message: str = ""
    failure_kind: Optional[FailureKind] = None
    state: RunState = RunState.IDLE
    status: Optional[RunStatus] = None

    @property
    def succeeded(self) -> bool:
        return self.code is CloseoutCode.SUCCESS

    def to_dict(self) -> dict:
        return {
            "code": int(self.code),
            "code_name": self.code.name,
            "message": self.message,
            "evaluation_message": self.evaluation_message,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "state": self.state.value,
            "percent_complete": self.status.percent_complete if self.status else None,
        }

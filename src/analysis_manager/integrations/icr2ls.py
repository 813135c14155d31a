from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from ..checkpoint import ResumePointScanner
from ..console import Effect, MarkerRule, MarkerTable, MatchKind
from ..context import JobContext
from ..fileops import possibly_quote_path
from ..models import (
    CheckpointKey,
    CloseoutCode,
    FailureKind,
    OutputDescriptor,
    RunRequest,
    RunStatus,
    UnitRange,
    ValidationFailure,
)
from .base import InputKind, Integration, RequiredInput, UnitVocabulary


LOGGER = logging.getLogger("analysis_manager.integrations.icr2ls")

STATUS_FILE = "Status.log"
FINISHED_STATE = "finished"

ICR2LS_STATES = frozenset(
    {
        "unknown",
        "idle",
        "processing",
        "killed",
        "error",
        "finished",
        "generating",
        "ticgeneration",
        "lcqticgeneration",
        "qtofpekgeneration",
        "mmtofpekgeneration",
        "ltqftpekgeneration",
    }
)

PROCESSING_MODES = {"PEK": ".pek", "TIC": ".tic"}

# Status.log is rewritten as key=value lines while ICR-2LS runs. It is not a
# console stream, so generic error detection is off: the tool's own ErrorMessage
# values are warnings, and a failed run shows up as state=error or a bad exit code.
ICR2LS_STATUS_MARKERS = MarkerTable(
    rules=(
        MarkerRule(r"^PercentComplete\s*=\s*([\d.]+)", Effect.SET_PROGRESS, kind=MatchKind.REGEX),
        MarkerRule(r"^ScansProcessed\s*=\s*(\d+)", Effect.SET_UNITS, kind=MatchKind.REGEX),
        MarkerRule(r"^state\s*=\s*(\S+)", Effect.SET_STATE, kind=MatchKind.REGEX),
        MarkerRule(r"^ErrorMessage\s*=\s*(\S.*)$", Effect.FLAG_WARNING, kind=MatchKind.REGEX),
        MarkerRule(r"^(date|time|status|ErrorMessage)\s*=", Effect.IGNORE, kind=MatchKind.REGEX),
    ),
    generic_errors=False,
)

PEK_RESUME_SCANNER = ResumePointScanner(
    unit_patterns=(r"^Scan = (\d+)", r"^Filename: .+ Scan.(\d+)"),
    closing_phrases=(
        "Number of isotopic distributions detected",
        "Processing stop time",
        "Number of peaks in spectrum",
    ),
)


class Icr2lsIntegration(Integration):
    """
    ICR-2LS deisotoping of FTICR spectra into a .pek file.

    Progress comes from ``Status.log`` rather than the console. The .pek file is
    checkpointed to the transfer directory so an interrupted job resumes after the
    last complete scan.
    """

    name = "ICR2LS"
    marker_table = ICR2LS_STATUS_MARKERS
    vocabulary = UnitVocabulary(plural="scans", lacking="had no peaks")
    known_states = ICR2LS_STATES
    status_file = STATUS_FILE
    resume_scanner = PEK_RESUME_SCANNER
    result_skip_patterns = (STATUS_FILE, "*.tmp", "*.new", "ICR2LS_Args_*.txt")

    def processing_mode(self, context: JobContext) -> str:
        return str(context.get_param("processing_mode", "PEK")).upper()

    def output_file(self, context: JobContext) -> Path:
        extension = PROCESSING_MODES.get(self.processing_mode(context), ".pek")
        return context.work_dir / f"{context.dataset}{extension}"

    def input_file(self, context: JobContext) -> Path:
        return context.work_dir / context.get_param("input_file", f"{context.dataset}.raw")

    def parameter_file(self, context: JobContext) -> Path:
        return context.work_dir / context.get_param("parameter_file", "")

    def required_inputs(self, context: JobContext) -> List[RequiredInput]:
        return [
            RequiredInput(self.parameter_file(context), InputKind.PARAM, context.get_param("parameter_file", "parameter file")),
            RequiredInput(self.input_file(context), InputKind.DATA, f"Dataset file {self.input_file(context).name}"),
        ]

    def checkpoint_key(self, context: JobContext) -> Optional[CheckpointKey]:
        if self.processing_mode(context) != "PEK":
            return None
        return CheckpointKey(
            dataset_folder=context.dataset_folder,
            output_folder=context.output_folder,
            artifact_name=self.output_file(context).name,
            job=context.job,
        )

    def checkpoint_artifact(self, context: JobContext) -> Optional[Path]:
        return self.output_file(context)

    def build_request(self, context: JobContext, resume_from: Optional[int] = None) -> Union[RunRequest, ValidationFailure]:
        program = self.program_path(context)
        if program is None:
            return ValidationFailure(CloseoutCode.FAILED, "ICR-2LS program path is not defined", FailureKind.LAUNCH)

        mode = self.processing_mode(context)
        if mode not in PROCESSING_MODES:
            return ValidationFailure(CloseoutCode.FAILED, f"Unsupported ICR-2LS processing mode: {mode}")

        arguments = [
            f"/I:{possibly_quote_path(self.input_file(context))}",
            f"/P:{possibly_quote_path(self.parameter_file(context))}",
            f"/O:{possibly_quote_path(self.output_file(context))}",
            f"/M:{mode}",
            f"/T:{context.get_int_param('file_type', 0)}",
        ]
        if context.get_bool_param("skip_ms2"):
            arguments.append("/NoMS2")

        unit_range = self._unit_range(context, resume_from)
        if unit_range is not None:
            arguments.append(f"/F:{unit_range.first}")
            if unit_range.last is not None:
                arguments.append(f"/L:{unit_range.last}")

        return RunRequest(
            tool_name=self.name,
            executable=program,
            arguments=" ".join(arguments),
            working_dir=context.work_dir,
            output=OutputDescriptor(pattern=self.output_file(context).name),
            max_runtime_seconds=context.get_int_param("max_runtime_seconds", 0),
            poll_interval_seconds=self.poll_interval(context),
            checkpoint_key=self.checkpoint_key(context),
            unit_range=unit_range,
            argument_file_switch="/R:",
        )

    def check_final_state(self, context: JobContext, status: RunStatus) -> Optional[str]:
        if status.state_label == FINISHED_STATE:
            return None
        if status.percent_complete >= 100:
            LOGGER.warning(
                "ICR-2LS state is '%s' rather than '%s', but progress reached 100%%; treating as finished",
                status.state_label,
                FINISHED_STATE,
            )
            return None
        return f"ICR-2LS stopped in state '{status.state_label}' at {status.percent_complete:.1f}% complete"

    @staticmethod
    def _unit_range(context: JobContext, resume_from: Optional[int]) -> Optional[UnitRange]:
        first = context.get_int_param("scan_start", 0)
        last = context.get_int_param("scan_end", 0)
        if resume_from is not None:
            first = max(first, resume_from)
        if first <= 0 and last <= 0:
            return None
        return UnitRange(first=max(first, 1), last=last if last > 0 else None)

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from ..collaborators import ResourceProvider
from ..console import TERMINAL_NO_DATA, Effect, MarkerRule, MarkerTable, MatchKind
from ..context import JobContext
from ..fileops import possibly_quote_path
from ..models import CloseoutCode, FailureKind, OutputDescriptor, RunRequest, RunStatus, ValidationFailure
from ..postprocess import rename_to_canonical
from .base import InputKind, Integration, RequiredInput, UnitVocabulary


LOGGER = logging.getLogger("analysis_manager.integrations.formularity")

CONSOLE_OUTPUT_FILE = "Formularity_ConsoleOutput.txt"
CALIBRATION_FAILED_MESSAGE = "Calibration failed; used uncalibrated masses"

PROGRESS_PCT_STARTING = 5
PROGRESS_PCT_FINISHED = 95

FORMULARITY_MARKERS = MarkerTable(
    rules=(
        MarkerRule("Nothing to align", Effect.FLAG_TERMINAL_STATE, label=TERMINAL_NO_DATA),
        MarkerRule(r"^Warning.*no data points found", Effect.FLAG_UNIT_FAILURE, kind=MatchKind.REGEX),
        MarkerRule("Calibration failed", Effect.FLAG_WARNING, label=CALIBRATION_FAILED_MESSAGE),
        MarkerRule(r"Error:(.+)", Effect.FLAG_ERROR, kind=MatchKind.REGEX),
        MarkerRule("error ", Effect.FLAG_ERROR, kind=MatchKind.PREFIX),
    ),
    error_prefix="Error running Formularity: ",
)


class FormularityIntegration(Integration):
    """
    Formularity CIA formula assignment over a dataset's peak lists.

    Each scan file is one unit; Formularity warns "no data points found" for a
    scan without peaks and prints "Nothing to align" when none had any.
    """

    name = "Formularity"
    marker_table = FORMULARITY_MARKERS
    vocabulary = UnitVocabulary(
        plural="scans",
        lacking="had no peaks",
        no_data_message="No peaks found",
        none_succeeded="None of the scans had peaks",
        single_failed="Scan did not have peaks",
    )
    console_output_file = CONSOLE_OUTPUT_FILE
    poll_interval_seconds = 15.0
    launch_progress = PROGRESS_PCT_STARTING
    finished_progress = PROGRESS_PCT_FINISHED
    result_skip_patterns = ("Report*.log", "log.csv", "*_scan*.xml", "JobParameters_*.xml", "*.tmp")

    def parameter_file(self, context: JobContext) -> Path:
        return context.work_dir / context.get_param("parameter_file", "")

    def scans_file(self, context: JobContext) -> Optional[Path]:
        name = context.get_param("dataset_scans_file")
        return context.work_dir / name if name else None

    def spectra_files(self, context: JobContext) -> List[Path]:
        return sorted(context.work_dir.glob(f"{context.dataset}_scan*.xml"))

    def cia_database(self, context: JobContext) -> Path:
        database = Path(context.get_param("cia_db_name", ""))
        org_db_dir = context.get_param("org_db_dir")
        return Path(org_db_dir) / database if org_db_dir else context.work_dir / database

    def calibration_file(self, context: JobContext) -> Optional[Path]:
        name = context.get_param("calibration_peaks_file")
        return context.work_dir / name if name else None

    def required_inputs(self, context: JobContext) -> List[RequiredInput]:
        inputs = [
            RequiredInput(self.parameter_file(context), InputKind.PARAM, context.get_param("parameter_file", "parameter file")),
            RequiredInput(self.cia_database(context), InputKind.DATA, "CIA database"),
        ]
        calibration = self.calibration_file(context)
        if calibration is not None:
            inputs.append(RequiredInput(calibration, InputKind.DATA, f"Calibration file {calibration.name}"))
        scans = self.scans_file(context)
        if scans is not None:
            inputs.append(RequiredInput(scans, InputKind.DATA, f"Dataset scans file {scans.name}"))
        return inputs

    def retrieve_resources(self, context: JobContext, provider: ResourceProvider) -> Optional[ValidationFailure]:
        param_source = context.get_param("parameter_file_storage_path")
        param_name = context.get_param("parameter_file")
        if param_source and param_name and not provider.retrieve_file(param_name, Path(param_source)):
            return ValidationFailure(CloseoutCode.NO_PARAM_FILE, f"Unable to retrieve parameter file {param_name}")
        spectra_type = context.get_param("spectra_type")
        if spectra_type and not provider.retrieve_spectra(spectra_type):
            return ValidationFailure(CloseoutCode.FILE_NOT_FOUND, f"Unable to retrieve {spectra_type} spectra for {context.dataset}")
        return None

    def count_units(self, context: JobContext) -> int:
        if self.scans_file(context) is not None:
            return 1
        return len(self.spectra_files(context))

    def build_request(self, context: JobContext, resume_from: Optional[int] = None) -> Union[RunRequest, ValidationFailure]:
        program = self.program_path(context)
        if program is None:
            return ValidationFailure(CloseoutCode.FAILED, "Formularity program path is not defined", FailureKind.LAUNCH)

        scans = self.scans_file(context)
        if scans is not None:
            input_spec = str(scans)
        else:
            wildcard = f"{context.dataset}_scan*.xml"
            if not self.spectra_files(context):
                return ValidationFailure(CloseoutCode.FILE_NOT_FOUND, f"XML spectrum files not found matching {wildcard}")
            input_spec = str(context.work_dir / wildcard)

        arguments = [
            "CIA",
            possibly_quote_path(input_spec),
            possibly_quote_path(self.parameter_file(context)),
            possibly_quote_path(self.cia_database(context)),
        ]
        calibration = self.calibration_file(context)
        if calibration is not None:
            arguments.append(possibly_quote_path(calibration))

        return RunRequest(
            tool_name=self.name,
            executable=program,
            arguments=" ".join(arguments),
            working_dir=context.work_dir,
            output=OutputDescriptor(pattern=f"{context.dataset}*Result.csv", search_subdirectories=True),
            max_runtime_seconds=context.get_int_param("max_runtime_seconds", 0),
            poll_interval_seconds=self.poll_interval(context),
            console_output_file=self.console_output_file,
        )

    def post_process(self, context: JobContext, status: RunStatus, code: CloseoutCode) -> Optional[str]:
        if CALIBRATION_FAILED_MESSAGE in status.warnings:
            LOGGER.warning(CALIBRATION_FAILED_MESSAGE)
        if code is CloseoutCode.NO_DATA:
            return None
        _, error = rename_to_canonical(
            context.work_dir,
            f"{context.dataset}*Result.csv",
            f"{context.dataset}_Report.csv",
        )
        return error or None

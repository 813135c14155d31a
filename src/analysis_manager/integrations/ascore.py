from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..collaborators import ArchiveOnFailure, ResultTransfer, StatusPublisher
from ..console import Effect, MarkerRule, MarkerTable, MatchKind
from ..context import JobContext
from ..errors import ConcatenationError
from ..fileops import compute_incremental_progress, possibly_quote_path
from ..models import (
    CloseoutCode,
    CloseoutResult,
    FailureKind,
    OutputDescriptor,
    RunRequest,
    RunState,
    RunStatus,
    ValidationFailure,
)
from ..postprocess import collect_job_files, concatenate_log_files, concatenate_result_files, find_job_directories
from ..runner import ExternalProcessRunner
from ..state_machine import OutcomeEvidence, RunStateMachine, classify_outcome
from .base import Integration, UnitVocabulary


LOGGER = logging.getLogger("analysis_manager.integrations.ascore")

ASCORE_SUFFIX = "_ascore.txt"
PLUS_ASCORE_SUFFIX = "_plus_ascore.txt"
CONCATENATED_PREFIX = "Concatenated"
LOG_FILE_NAME = "AScore_LogFile.txt"
PROGRESS_LINE_PREFIXES = ("Percent Completion", "Skipping PHRP result")
SPECTRUM_PATTERNS = ("*_dta.txt", "*.mzML")

ASCORE_MARKERS = MarkerTable(
    rules=(
        MarkerRule(r"Percent Completion\s+(\d+)%", Effect.SET_PROGRESS, kind=MatchKind.REGEX),
        MarkerRule("Skipping PHRP result", Effect.IGNORE, kind=MatchKind.PREFIX),
        MarkerRule("error:", Effect.FLAG_ERROR, kind=MatchKind.PREFIX),
    ),
    error_prefix="Error running AScore: ",
)

AGGREGATE_VOCABULARY = UnitVocabulary(
    plural="jobs",
    lacking="could not be processed",
    no_data_message="No jobs could be processed by AScore",
    none_succeeded="None of the jobs could be processed",
    single_failed="The job could not be processed",
)


@dataclass(frozen=True)
class SearchToolFiles:
    """First-hits and synopsis file suffixes written by a search tool, and its AScore name."""

    fht_suffix: str
    syn_suffix: str
    ascore_tool: str


SEARCH_TOOLS: Dict[str, SearchToolFiles] = {
    "sequest": SearchToolFiles("_fht.txt", "_syn.txt", "sequest"),
    "xtandem": SearchToolFiles("_xt_fht.txt", "_xt_syn.txt", "xtandem"),
    "msgfplus": SearchToolFiles("_msgfplus_fht.txt", "_msgfplus_syn.txt", "msgfplus"),
}


def resolve_search_tool(tool_name: str) -> Optional[SearchToolFiles]:
    name = tool_name.lower()
    for key, files in SEARCH_TOOLS.items():
        if name.startswith(key):
            return files
    return None


class AScoreJobIntegration(Integration):
    """One AScore invocation over a single sub-job folder of a data package."""

    name = "AScore"
    marker_table = ASCORE_MARKERS
    poll_interval_seconds = 5.0

    def __init__(
        self,
        input_file: Path,
        spectrum_file: Path,
        param_file: Path,
        search_tool: str,
        tag: str,
        progress_window: Tuple[float, float] = (0.0, 100.0),
    ) -> None:
        self.input_file = Path(input_file)
        self.spectrum_file = Path(spectrum_file)
        self.param_file = Path(param_file)
        self.search_tool = search_tool
        self.progress_window = progress_window
        self.console_output_file = f"AScore_ConsoleOutput_{tag}.txt"

    @property
    def stem(self) -> str:
        return self.input_file.name[: -len(".txt")] if self.input_file.name.endswith(".txt") else self.input_file.stem

    @property
    def output_name(self) -> str:
        return f"{self.stem}{ASCORE_SUFFIX}"

    @property
    def plus_output_name(self) -> str:
        return f"{self.stem}{PLUS_ASCORE_SUFFIX}"

    def map_progress(self, percent: float) -> float:
        start, end = self.progress_window
        return compute_incremental_progress(start, end, percent)

    def build_request(self, context: JobContext, resume_from: Optional[int] = None) -> Union[RunRequest, ValidationFailure]:
        program = self.program_path(context)
        if program is None:
            return ValidationFailure(CloseoutCode.FAILED, "AScore program path is not defined", FailureKind.LAUNCH)
        arguments = [
            f"-T:{self.search_tool}",
            f"-F:{possibly_quote_path(self.input_file)}",
            f"-D:{possibly_quote_path(self.spectrum_file)}",
            f"-P:{possibly_quote_path(self.param_file)}",
            f"-O:{possibly_quote_path(context.work_dir)}",
            f"-U:{possibly_quote_path(context.work_dir / self.plus_output_name)}",
        ]
        return RunRequest(
            tool_name=self.name,
            executable=program,
            arguments=" ".join(arguments),
            working_dir=context.work_dir,
            output=OutputDescriptor(pattern=self.output_name),
            max_runtime_seconds=context.get_int_param("max_runtime_seconds", 0),
            poll_interval_seconds=self.poll_interval(context),
            console_output_file=self.console_output_file,
            argument_file_switch="-R:",
        )


@dataclass
class _SubJob:
    job: int
    folder: Path
    dataset: str
    input_file: Path
    spectrum_file: Path
    tool: SearchToolFiles


class _WindowPublisher:
    """Forward sub-job status updates, capped at the end of the sub-job's progress slice."""

    def __init__(self, publisher: StatusPublisher, ceiling: float) -> None:
        self._publisher = publisher
        self._ceiling = ceiling

    def publish(self, percent_complete: float, units_processed: int, state_label: str) -> None:
        self._publisher.publish(min(percent_complete, self._ceiling), units_processed, state_label)


class AScoreAggregator:
    """
    Run AScore over every ``Job<N>`` folder of a data package and merge the results.

    Jobs are skipped when their dataset is unknown, when no spectrum file is
    present, or when no synopsis/first-hits file from a supported search tool is
    found. Skipped and failed jobs count as failed units: the aggregate succeeds
    with an evaluation message as long as at least one job produced results.
    """

    name = "AScore"
    vocabulary = AGGREGATE_VOCABULARY
    result_files = (
        f"{CONCATENATED_PREFIX}{ASCORE_SUFFIX}",
        f"{CONCATENATED_PREFIX}{PLUS_ASCORE_SUFFIX}",
        LOG_FILE_NAME,
    )

    def __init__(
        self,
        runner: Optional[ExternalProcessRunner] = None,
        publisher: Optional[StatusPublisher] = None,
        archiver: Optional[ArchiveOnFailure] = None,
        transfer: Optional[ResultTransfer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._publisher = publisher
        self._archiver = archiver
        self._transfer = transfer
        self._clock = clock
        self.sub_results: Dict[int, CloseoutResult] = {}

    def execute(self, context: JobContext) -> CloseoutResult:
        status = RunStatus(started_at=datetime.utcnow(), state_label="processing")
        self.sub_results = {}

        param_name = context.get_param("ascore_param_file")
        param_file = context.work_dir / param_name if param_name else None
        if param_file is None or not param_file.exists():
            message = f"AScore parameter file not found: {param_name or '(not defined)'}"
            return self._close(status, CloseoutCode.NO_PARAM_FILE, RunState.FAILED, message, failure_kind=FailureKind.VALIDATION)

        candidates, skipped = self._discover(context)
        status.units_total = len(candidates) + len(skipped)
        for job, reason in skipped:
            LOGGER.warning("Skipping job %d: %s", job, reason)
            status.add_warning(f"Job {job}: {reason}")

        processing_minutes: Dict[Path, float] = {}
        logs: Dict[int, List[Path]] = {}
        succeeded: List[int] = []
        for index, sub_job in enumerate(candidates):
            if context.cancelled:
                return self._fail(context, status, "AScore processing cancelled", FailureKind.RUNTIME)
            window = _progress_window(index, len(candidates))
            integration = AScoreJobIntegration(
                input_file=sub_job.input_file,
                spectrum_file=sub_job.spectrum_file,
                param_file=param_file,
                search_tool=sub_job.tool.ascore_tool,
                tag=f"Job{sub_job.job}",
                progress_window=window,
            )
            sub_context = context.derive(work_dir=sub_job.folder, job=sub_job.job, dataset=sub_job.dataset)
            publisher = _WindowPublisher(self._publisher, window[1]) if self._publisher is not None else None
            machine = RunStateMachine(runner=self._runner, publisher=publisher, clock=self._clock)

            started = self._clock()
            result = machine.execute(sub_context, integration)
            self.sub_results[sub_job.job] = result
            log_path = sub_job.folder / integration.console_output_file
            logs[sub_job.job] = [log_path]
            processing_minutes[log_path] = (self._clock() - started) / 60.0

            if result.succeeded:
                succeeded.append(sub_job.job)
            else:
                LOGGER.warning("AScore failed for job %d: %s", sub_job.job, result.message)
                status.add_warning(f"Job {sub_job.job}: {result.message}")
            status.update_progress(window[1])
            status.update_units_processed(index + 1)

        status.units_failed = len(skipped) + len(candidates) - len(succeeded)
        try:
            concatenated = self._concatenate(context.work_dir, succeeded, logs, processing_minutes)
        except (ConcatenationError, OSError) as exc:
            return self._fail(context, status, f"Error concatenating AScore results: {exc}", FailureKind.NO_USABLE_OUTPUT)

        evidence = OutcomeEvidence(
            process_ok=True,
            artifact_present=concatenated or (status.units_total > 0 and not succeeded),
            missing_artifact_message="No Job folders with AScore input files were found",
            units_total=status.units_total,
            units_failed=status.units_failed,
        )
        classification = classify_outcome(evidence, self.vocabulary)
        if classification.state is RunState.FAILED:
            return self._fail(context, status, classification.message, classification.failure_kind)

        if self._transfer is not None:
            manifest = [context.work_dir / name for name in self.result_files if (context.work_dir / name).exists()]
            if not self._transfer.copy_results_to_durable_storage(context.work_dir, manifest):
                return self._fail(context, status, "Error copying results to the transfer directory", FailureKind.RUNTIME)

        if classification.code is CloseoutCode.SUCCESS:
            status.update_progress(100.0)
        return self._close(
            status,
            classification.code,
            classification.state,
            classification.message,
            evaluation_message=classification.evaluation_message,
            failure_kind=classification.failure_kind,
        )

    def _discover(self, context: JobContext) -> Tuple[List[_SubJob], List[Tuple[int, str]]]:
        dataset_map = _int_keys(context.get_param("job_dataset_map", {}))
        tool_map = _int_keys(context.get_param("job_tool_map", {}))
        candidates: List[_SubJob] = []
        skipped: List[Tuple[int, str]] = []

        for job, folder in find_job_directories(context.work_dir).items():
            tool_name = str(tool_map.get(job, ""))
            tool = resolve_search_tool(tool_name) if tool_name else None
            input_file = _find_input_file(folder, tool)
            if input_file is None and tool is None and not tool_name:
                continue
            dataset = dataset_map.get(job)
            if dataset is None:
                skipped.append((job, "job is not part of the data package"))
                continue
            if tool is None:
                reason = f"unsupported search tool '{tool_name}'" if tool_name else "search tool is not defined"
                skipped.append((job, reason))
                continue
            if input_file is None:
                skipped.append((job, f"no {tool.syn_suffix} or {tool.fht_suffix} file"))
                continue
            spectrum = _find_spectrum_file(folder, str(dataset))
            if spectrum is None:
                skipped.append((job, "no spectrum file (_dta.txt or .mzML)"))
                continue
            candidates.append(_SubJob(job, folder, str(dataset), input_file, spectrum, tool))
        return candidates, skipped

    def _concatenate(
        self,
        root: Path,
        succeeded: List[int],
        logs: Dict[int, List[Path]],
        processing_minutes: Dict[Path, float],
    ) -> bool:
        if logs:
            concatenate_log_files(logs, root / LOG_FILE_NAME, processing_minutes, PROGRESS_LINE_PREFIXES)
        if not succeeded:
            return False

        written = False
        for suffix, exclude in ((ASCORE_SUFFIX, (PLUS_ASCORE_SUFFIX,)), (PLUS_ASCORE_SUFFIX, ())):
            files = {job: path for job, path in collect_job_files(root, suffix, exclude).items() if job in succeeded}
            if not files:
                continue
            concatenate_result_files(files, root / f"{CONCATENATED_PREFIX}{suffix}")
            written = True
        return written

    def _fail(self, context: JobContext, status: RunStatus, message: str, failure_kind: Optional[FailureKind]) -> CloseoutResult:
        if self._archiver is not None:
            try:
                self._archiver.copy_partial_results(context.work_dir)
            except OSError as exc:
                LOGGER.error("Unable to archive partial results from %s: %s", context.work_dir, exc)
        return self._close(status, CloseoutCode.FAILED, RunState.FAILED, message, failure_kind=failure_kind)

    def _close(
        self,
        status: RunStatus,
        code: CloseoutCode,
        state: RunState,
        message: str,
        evaluation_message: str = "",
        failure_kind: Optional[FailureKind] = None,
    ) -> CloseoutResult:
        status.finished_at = datetime.utcnow()
        status.state_label = state.value
        if code is not CloseoutCode.SUCCESS and message:
            status.append_error(message)
        if self._publisher is not None:
            try:
                self._publisher.publish(status.percent_complete, status.units_processed, status.state_label)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Unable to publish status: %s", exc)
        if state is RunState.FAILED:
            LOGGER.error("AScore aggregation failed (%s): %s", code.name, message)
        elif evaluation_message:
            LOGGER.warning("AScore aggregation finished with %s: %s", code.name, evaluation_message)
        else:
            LOGGER.info("AScore aggregation finished with %s", code.name)
        return CloseoutResult(
            code=code,
            message=message,
            evaluation_message=evaluation_message,
            failure_kind=failure_kind,
            state=state,
            status=status.snapshot(),
        )


def _progress_window(index: int, count: int) -> Tuple[float, float]:
    if count <= 0:
        return 0.0, 100.0
    step = 100.0 / count
    return index * step, (index + 1) * step


def _int_keys(mapping: Any) -> Dict[int, Any]:
    result: Dict[int, Any] = {}
    if not isinstance(mapping, dict):
        return result
    for key, value in mapping.items():
        try:
            result[int(key)] = value
        except (TypeError, ValueError):
            LOGGER.warning("Ignoring non-numeric job id %r", key)
    return result


def _find_input_file(folder: Path, tool: Optional[SearchToolFiles]) -> Optional[Path]:
    """Prefer the synopsis file; fall back to first hits."""
    suffixes = (tool.syn_suffix, tool.fht_suffix) if tool else ("_syn.txt", "_fht.txt")
    for suffix in suffixes:
        matches = sorted(path for path in folder.glob(f"*{suffix}") if path.is_file())
        if matches:
            return matches[0]
    return None


def _find_spectrum_file(folder: Path, dataset: str) -> Optional[Path]:
    for pattern in SPECTRUM_PATTERNS:
        preferred = folder / pattern.replace("*", dataset, 1)
        if preferred.exists():
            return preferred
        matches = sorted(folder.glob(pattern))
        if matches:
            return matches[0]
    return None

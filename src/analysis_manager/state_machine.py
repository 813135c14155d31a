from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .checkpoint import CheckpointStore, RestoredCheckpoint, merge_resumed_output
from .collaborators import ArchiveOnFailure, ResourceProvider, ResultTransfer, StatusPublisher
from .console import TERMINAL_FAILED, TERMINAL_NO_DATA, ConsoleOutputParser, ParserState
from .context import JobContext
from .fileops import delete_file_with_retries
from .integrations.base import Integration, UnitVocabulary
from .models import (
    CheckpointKey,
    CloseoutCode,
    CloseoutResult,
    EventKind,
    FailureKind,
    RunRequest,
    RunState,
    RunStatus,
    ValidationFailure,
)
from .postprocess import locate_artifacts
from .runner import ExternalProcessRunner, ProcessHandle, RunOutcome
from .watcher import StatusFileWatcher


LOGGER = logging.getLogger("analysis_manager.state_machine")


@dataclass
class OutcomeEvidence:
    """Facts gathered after the tool exits; the input to ``classify_outcome``."""

    process_ok: bool
    artifact_present: bool
    artifact_size_ok: bool = True
    fatal_error: str = ""
    process_message: str = ""
    missing_artifact_message: str = ""
    units_total: int = 0
    units_failed: int = 0
    no_data_signalled: bool = False


@dataclass(frozen=True)
class Classification:
    code: CloseoutCode
    state: RunState
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    evaluation_message: str = ""


def classify_outcome(evidence: OutcomeEvidence, vocabulary: Optional[UnitVocabulary] = None) -> Classification:
    """
    Map the evidence of a finished run onto the closeout taxonomy.

    Rules, first match wins:

    1. process failed or fatal error text -> FAILED (runtime failure)
    2. expected artifact missing -> FAILED (no usable output)
    3. tool signalled no data, or every unit failed -> NO_DATA
    4. artifact smaller than the minimum size -> FAILED (no usable output)
    5. some units failed -> SUCCESS with a partial-failure evaluation message
    6. otherwise SUCCESS
    """
    vocabulary = vocabulary or UnitVocabulary()
    if not evidence.process_ok:
        return Classification(
            CloseoutCode.FAILED,
            RunState.FAILED,
            FailureKind.RUNTIME,
            evidence.process_message or "Error running the external tool",
        )
    if evidence.fatal_error:
        return Classification(CloseoutCode.FAILED, RunState.FAILED, FailureKind.RUNTIME, evidence.fatal_error)
    if not evidence.artifact_present:
        return Classification(
            CloseoutCode.FAILED,
            RunState.FAILED,
            FailureKind.NO_USABLE_OUTPUT,
            evidence.missing_artifact_message or "Expected output file was not created",
        )

    total = evidence.units_total
    failed = evidence.units_failed
    if evidence.no_data_signalled or (total > 0 and failed >= total):
        return Classification(
            CloseoutCode.NO_DATA,
            RunState.NO_DATA,
            FailureKind.NO_USABLE_OUTPUT,
            vocabulary.no_data_message,
            vocabulary.all_failed(total),
        )
    if not evidence.artifact_size_ok:
        return Classification(CloseoutCode.FAILED, RunState.FAILED, FailureKind.NO_USABLE_OUTPUT, "Output file is empty")
    if failed > 0:
        return Classification(
            CloseoutCode.SUCCESS,
            RunState.SUCCEEDED,
            FailureKind.PARTIAL_DATA_WARNING,
            evaluation_message=vocabulary.partial_failure(failed, total),
        )
    return Classification(CloseoutCode.SUCCESS, RunState.SUCCEEDED)


class RunStateMachine:
    """
    Drive one tool invocation from validation to a closeout result.

    Idle -> Validating -> Launching -> Running -> Finalizing -> Succeeded | Failed | NoData.
    Collaborators are optional so that aggregator integrations can run sub-jobs
    without archiving or transferring each one.
    """

    def __init__(
        self,
        runner: Optional[ExternalProcessRunner] = None,
        checkpoints: Optional[CheckpointStore] = None,
        resources: Optional[ResourceProvider] = None,
        publisher: Optional[StatusPublisher] = None,
        archiver: Optional[ArchiveOnFailure] = None,
        transfer: Optional[ResultTransfer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._checkpoints = checkpoints
        self._resources = resources
        self._publisher = publisher
        self._archiver = archiver
        self._transfer = transfer
        self._clock = clock
        self._state = RunState.IDLE
        self._history: List[RunState] = [RunState.IDLE]
        self._status = RunStatus()
        self._logger = LOGGER

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def history(self) -> List[RunState]:
        return list(self._history)

    @property
    def checkpoints(self) -> Optional[CheckpointStore]:
        return self._checkpoints

    def execute(self, context: JobContext, integration: Integration) -> CloseoutResult:
        """Run *integration* for *context* and return exactly one closeout result."""
        self._state = RunState.IDLE
        self._history = [RunState.IDLE]
        self._status = RunStatus(started_at=datetime.utcnow())
        self._logger.info("Starting %s for job %s (%s)", integration.name, context.job, context.dataset)

        self._transition(RunState.VALIDATING)
        failure = self._validate(context, integration)
        if failure is not None:
            return self._close(failure.code, RunState.FAILED, failure.message, failure_kind=failure.kind)

        self._transition(RunState.LAUNCHING)
        self._status.units_total = integration.count_units(context)
        key = integration.checkpoint_key(context) if self._checkpoints is not None else None
        restored = self._restore(context, integration, key)

        request = integration.build_request(context, restored.resume_from if restored else None)
        if isinstance(request, ValidationFailure):
            return self._close(request.code, RunState.FAILED, request.message, failure_kind=FailureKind.LAUNCH)
        if restored is not None and not _resumes_after(request, restored):
            message = f"{integration.name} request would reprocess units up to {restored.last_completed_unit}"
            return self._close(CloseoutCode.FAILED, RunState.FAILED, message, failure_kind=FailureKind.LAUNCH)
        if context.cancelled:
            return self._close(CloseoutCode.FAILED, RunState.FAILED, "Job cancelled before launch", failure_kind=FailureKind.RUNTIME)

        runner = self._runner or ExternalProcessRunner(context.settings.max_inline_argument_length, clock=self._clock)
        handle = runner.launch(request)
        if not handle.launched:
            return self._close(CloseoutCode.FAILED, RunState.FAILED, handle.launch_message, failure_kind=FailureKind.LAUNCH)

        self._transition(RunState.RUNNING)
        self._status.update_progress(integration.map_progress(integration.launch_progress))
        monitor = _RunMonitor(self, runner, handle, context, integration, key, restored)
        monitor.publish(force=True)
        try:
            with monitor:
                outcome = runner.wait(handle, on_tick=monitor.tick, cancel_event=context.cancel_event)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("Error while monitoring %s", integration.name)
            self._transition(RunState.FINALIZING)
            self._save_failure_checkpoint(context, integration, key, restored)
            return self._fail(context, f"Error while monitoring {integration.name}: {exc}", FailureKind.RUNTIME)

        self._transition(RunState.FINALIZING)
        monitor.refresh(final=True)
        return self._finalize(context, integration, request, outcome, monitor, key, restored)

    def _validate(self, context: JobContext, integration: Integration) -> Optional[ValidationFailure]:
        if not context.work_dir.is_dir():
            return ValidationFailure(CloseoutCode.FILE_NOT_FOUND, f"Working directory not found: {context.work_dir}")
        if self._resources is not None:
            failure = integration.retrieve_resources(context, self._resources)
            if failure is not None:
                return failure
        for required in integration.required_inputs(context):
            if not required.path.exists():
                self._logger.error("Missing required %s input: %s", required.kind.value, required.path)
                return required.missing_failure()
        return None

    def _restore(
        self,
        context: JobContext,
        integration: Integration,
        key: Optional[CheckpointKey],
    ) -> Optional[RestoredCheckpoint]:
        if key is None or self._checkpoints is None or context.get_bool_param("ignore_checkpoint"):
            return None
        return self._checkpoints.try_restore_checkpoint(key, context.work_dir, integration.resume_scanner)

    def _finalize(
        self,
        context: JobContext,
        integration: Integration,
        request: RunRequest,
        outcome: RunOutcome,
        monitor: "_RunMonitor",
        key: Optional[CheckpointKey],
        restored: Optional[RestoredCheckpoint],
    ) -> CloseoutResult:
        status = self._status
        exit_ok = outcome.exit_code == 0 or not request.nonzero_exit_is_failure
        process_ok = outcome.completed and exit_ok
        if outcome.reason:
            process_message = outcome.message
        elif not exit_ok:
            process_message = f"{integration.name} returned exit code {outcome.exit_code}"
        else:
            process_message = ""

        if process_ok:
            status.update_progress(integration.map_progress(integration.finished_progress))
        else:
            self._save_failure_checkpoint(context, integration, key, restored)

        fatal_error = status.error_message
        if monitor.terminal_label == TERMINAL_FAILED and not fatal_error:
            fatal_error = f"{integration.name} reported a fatal state"
        if process_ok and not fatal_error:
            fatal_error = integration.check_final_state(context, status) or ""

        if restored is not None and process_ok:
            artifact = integration.checkpoint_artifact(context)
            if artifact is not None:
                merge_resumed_output(restored.local_file, artifact)
            delete_file_with_retries(restored.local_file)

        descriptor = request.output
        located = locate_artifacts(
            context.work_dir,
            descriptor.pattern,
            recursive=descriptor.search_subdirectories,
            exclude=("*.tmp",),
        )
        large_enough = [path for path in located.matches if path.stat().st_size >= descriptor.min_size_bytes]
        evidence = OutcomeEvidence(
            process_ok=process_ok,
            artifact_present=len(located.matches) >= descriptor.min_count,
            artifact_size_ok=len(large_enough) >= descriptor.min_count,
            fatal_error=fatal_error,
            process_message=process_message,
            missing_artifact_message=f"{integration.name} output not found: {descriptor.pattern}",
            units_total=status.units_total,
            units_failed=status.units_failed,
            no_data_signalled=monitor.terminal_label == TERMINAL_NO_DATA,
        )
        classification = classify_outcome(evidence, integration.vocabulary)
        if classification.state is RunState.FAILED:
            return self._fail(context, classification.message, classification.failure_kind)

        error = integration.post_process(context, status, classification.code)
        if error:
            return self._fail(context, error, FailureKind.NO_USABLE_OUTPUT)

        if self._transfer is not None:
            manifest = integration.result_manifest(context)
            if not self._transfer.copy_results_to_durable_storage(context.work_dir, manifest):
                return self._fail(context, "Error copying results to the transfer directory", FailureKind.RUNTIME)

        if classification.code is CloseoutCode.SUCCESS:
            status.update_progress(100.0)
            if key is not None and self._checkpoints is not None:
                self._checkpoints.mark_safe_to_delete(key)

        return self._close(
            classification.code,
            classification.state,
            classification.message,
            evaluation_message=classification.evaluation_message,
            failure_kind=classification.failure_kind,
        )

    def _save_failure_checkpoint(
        self,
        context: JobContext,
        integration: Integration,
        key: Optional[CheckpointKey],
        restored: Optional[RestoredCheckpoint],
    ) -> None:
        if key is None or self._checkpoints is None or integration.resume_scanner is None:
            return
        artifact = integration.checkpoint_artifact(context)
        if artifact is None:
            return
        self._checkpoints.try_save_checkpoint(
            key,
            artifact,
            last_completed_unit=self._status.units_processed or None,
            force=True,
            preamble=restored.local_file if restored else None,
        )

    def publish_status(self) -> None:
        """Send the current status to the publisher; a failing publisher is logged, never raised."""
        if self._publisher is None:
            return
        status = self._status
        try:
            self._publisher.publish(status.percent_complete, status.units_processed, status.state_label)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Unable to publish status: %s", exc)

    def _fail(self, context: JobContext, message: str, failure_kind: Optional[FailureKind]) -> CloseoutResult:
        if self._archiver is not None:
            try:
                self._archiver.copy_partial_results(context.work_dir)
            except OSError as exc:
                self._logger.error("Unable to archive partial results from %s: %s", context.work_dir, exc)
        return self._close(CloseoutCode.FAILED, RunState.FAILED, message, failure_kind=failure_kind)

    def _close(
        self,
        code: CloseoutCode,
        state: RunState,
        message: str,
        evaluation_message: str = "",
        failure_kind: Optional[FailureKind] = None,
    ) -> CloseoutResult:
        status = self._status
        status.finished_at = datetime.utcnow()
        if code is not CloseoutCode.SUCCESS and message:
            status.append_error(message)
        self._transition(state)
        self.publish_status()

        if state is RunState.FAILED:
            self._logger.error("Run failed (%s): %s", code.name, message)
        elif evaluation_message:
            self._logger.warning("Run finished with %s: %s", code.name, evaluation_message)
        else:
            self._logger.info("Run finished with %s", code.name)
        return CloseoutResult(
            code=code,
            message=message,
            evaluation_message=evaluation_message,
            failure_kind=failure_kind,
            state=state,
            status=status.snapshot(),
        )

    def _transition(self, state: RunState) -> None:
        self._logger.debug("%s -> %s", self._state.value, state.value)
        self._state = state
        self._history.append(state)


class _RunMonitor:
    """Per-tick work while the tool runs: parse, checkpoint, publish, log."""

    def __init__(
        self,
        machine: RunStateMachine,
        runner: ExternalProcessRunner,
        handle: ProcessHandle,
        context: JobContext,
        integration: Integration,
        key: Optional[CheckpointKey],
        restored: Optional[RestoredCheckpoint],
    ) -> None:
        self._machine = machine
        self._runner = runner
        self._handle = handle
        self._context = context
        self._integration = integration
        self._key = key
        self._restored = restored
        self._status = machine._status
        self._clock = machine._clock
        self._parser = ConsoleOutputParser(integration.marker_table)
        self._parser_state = ParserState()
        self._reported_error = ""
        self._warned_states: set = set()
        self._last_publish: Optional[float] = None
        self._last_progress_log = self._clock()

        watched = context.work_dir / integration.status_file if integration.status_file else None
        self._watcher = StatusFileWatcher(watched) if watched is not None else None

    @property
    def terminal_label(self) -> Optional[str]:
        return self._parser_state.terminal_label

    def __enter__(self) -> "_RunMonitor":
        if self._watcher is not None:
            self._watcher.start()
        return self

    def __exit__(self, *_exc) -> None:
        if self._watcher is not None:
            self._watcher.stop()

    def tick(self, _handle: ProcessHandle) -> Optional[bool]:
        if self._watcher is None or self._watcher.drain():
            self.refresh()
        self._save_checkpoint()
        self.publish()
        self._log_progress()
        return None

    def refresh(self, final: bool = False) -> None:
        path = self._integration.monitored_file(self._context)
        if self._integration.status_file is None:
            text = self._runner.console_text(self._handle)
        elif path is not None and path.exists():
            text = path.read_text(encoding="utf-8", errors="replace")
        else:
            return

        events, self._parser_state = self._parser.parse(text, self._parser_state, final=final)
        state = self._parser_state
        status = self._status
        if state.max_progress > 0:
            status.update_progress(self._integration.map_progress(state.max_progress))
        status.update_units_processed(state.units_processed)
        status.units_failed = max(status.units_failed, state.unit_failures)
        if state.state_label:
            self._update_state_label(state.state_label)
        for warning in state.warnings:
            status.add_warning(warning)
        if state.error_message:
            status.error_message = state.error_message

        for event in events:
            if event.kind is EventKind.ERROR and event.text != self._reported_error:
                self._reported_error = event.text
                LOGGER.error(event.text)
            elif event.kind is EventKind.WARNING:
                LOGGER.warning(event.text)
            elif event.kind is EventKind.STATE_CHANGE:
                LOGGER.debug("%s state: %s", self._integration.name, event.text)

    def publish(self, force: bool = False) -> None:
        now = self._clock()
        interval = self._context.settings.status_publish_interval_seconds
        if not force and self._last_publish is not None and now - self._last_publish < interval:
            return
        self._last_publish = now
        self._machine.publish_status()

    def _save_checkpoint(self) -> None:
        checkpoints = self._machine.checkpoints
        if checkpoints is None or self._key is None:
            return
        artifact = self._integration.checkpoint_artifact(self._context)
        if artifact is None:
            return
        checkpoints.try_save_checkpoint(
            self._key,
            artifact,
            last_completed_unit=self._status.units_processed or None,
            preamble=self._restored.local_file if self._restored else None,
        )

    def _update_state_label(self, label: str) -> None:
        status = self._status
        status.state_label = label
        known = self._integration.known_states
        status.state_recognized = not known or label in known
        if not status.state_recognized and label not in self._warned_states:
            self._warned_states.add(label)
            LOGGER.warning("Unrecognized %s state: %s", self._integration.name, label)

    def _log_progress(self) -> None:
        settings = self._context.settings
        minutes = settings.verbose_progress_log_interval_minutes if self._context.verbose else settings.progress_log_interval_minutes
        now = self._clock()
        if now - self._last_progress_log < minutes * 60:
            return
        self._last_progress_log = now
        status = self._status
        LOGGER.info(
            "%s: %.1f%% complete, %d units processed, state %s",
            self._integration.name,
            status.percent_complete,
            status.units_processed,
            status.state_label,
        )


def _resumes_after(request: RunRequest, restored: RestoredCheckpoint) -> bool:
    return request.unit_range is not None and request.unit_range.first > restored.last_completed_unit

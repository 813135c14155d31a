from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from shutil import which
from typing import IO, Callable, List, Optional, Tuple

from .fileops import delete_file_with_retries
from .models import MIN_POLL_INTERVAL_SECONDS, RunRequest


LOGGER = logging.getLogger("analysis_manager.runner")

DEFAULT_MAX_INLINE_ARGUMENT_LENGTH = 250
MISSING_EXECUTABLE_EXIT_CODE = 127
WAIT_SLICE_SECONDS = 0.25

REASON_MISSING_EXECUTABLE = "missing-executable"
REASON_OS_ERROR = "os-error"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"
REASON_ABORTED = "aborted"

LAUNCH_FAILURE_REASONS = {REASON_MISSING_EXECUTABLE, REASON_OS_ERROR}


@dataclass
class ProcessHandle:
    """A launched (or refused) child process and its output plumbing."""

    request: RunRequest
    command: List[str]
    process: Optional[subprocess.Popen] = None
    started_at: float = 0.0
    argument_file: Optional[Path] = None
    launch_error: Optional[str] = None
    launch_message: str = ""
    _stream: Optional[IO[str]] = field(default=None, repr=False)
    _buffer: List[str] = field(default_factory=list, repr=False)
    _buffer_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _reader: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def launched(self) -> bool:
        return self.process is not None

    @property
    def uses_argument_file(self) -> bool:
        return self.argument_file is not None

    def cached_output(self) -> str:
        with self._buffer_lock:
            return "".join(self._buffer)


@dataclass
class PollResult:
    still_running: bool
    exit_code: Optional[int] = None


@dataclass
class RunOutcome:
    """What happened to the child process; classification is left to the caller."""

    command: List[str]
    exit_code: Optional[int]
    reason: Optional[str] = None
    console_path: Optional[Path] = None
    used_argument_file: bool = False
    elapsed_seconds: float = 0.0
    message: str = ""

    @property
    def launched(self) -> bool:
        return self.reason not in LAUNCH_FAILURE_REASONS

    @property
    def completed(self) -> bool:
        """True when the process exited on its own."""
        return self.reason is None


OnTick = Callable[[ProcessHandle], Optional[bool]]


class ExternalProcessRunner:
    """
    Launch an external tool and poll it until it exits.

    Output is either streamed into the request's console output file as the tool
    writes it, or cached in memory by a reader thread and written out once the
    tool exits. Argument strings longer than ``max_inline_argument_length`` are
    written to a file in the working directory and passed by reference using the
    request's ``argument_file_switch``.
    """

    def __init__(
        self,
        max_inline_argument_length: int = DEFAULT_MAX_INLINE_ARGUMENT_LENGTH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_inline = max_inline_argument_length
        self._clock = clock

    def build_command(self, request: RunRequest, executable: Optional[str] = None) -> Tuple[List[str], Optional[Path]]:
        program = executable or str(request.executable)
        arguments = request.arguments.strip()
        if len(arguments) > self._max_inline:
            argument_file = self._write_argument_file(request, arguments)
            return [program, f"{request.argument_file_switch}{argument_file}"], argument_file
        return [program, *shlex.split(arguments)], None

    def launch(self, request: RunRequest) -> ProcessHandle:
        executable = which(str(request.executable))
        if executable is None:
            LOGGER.error("Executable not found: %s", request.executable)
            return ProcessHandle(
                request=request,
                command=[str(request.executable)],
                launch_error=REASON_MISSING_EXECUTABLE,
                launch_message=f"{request.tool_name} executable not found: {request.executable}",
            )

        command, argument_file = self.build_command(request, executable)
        handle = ProcessHandle(request=request, command=command, argument_file=argument_file)
        console_path = request.console_output_path
        incremental = console_path is not None and request.write_console_output_incrementally

        LOGGER.info("Launching %s: %s", request.tool_name, " ".join(command))
        try:
            if incremental:
                handle._stream = console_path.open("w", encoding="utf-8")
                stdout = handle._stream
            else:
                stdout = subprocess.PIPE
            handle.process = subprocess.Popen(
                command,
                cwd=request.working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as exc:
            self._discard(handle)
            handle.launch_error = REASON_MISSING_EXECUTABLE
            handle.launch_message = f"{request.tool_name} executable not found: {exc}"
            LOGGER.error(handle.launch_message)
            return handle
        except OSError as exc:
            self._discard(handle)
            handle.launch_error = REASON_OS_ERROR
            handle.launch_message = f"Unable to start {request.tool_name}: {exc}"
            LOGGER.error(handle.launch_message)
            return handle

        handle.started_at = self._clock()
        if not incremental:
            handle._reader = threading.Thread(target=_pump, args=(handle,), name=f"{request.tool_name}-stdout", daemon=True)
            handle._reader.start()
        return handle

    def poll_once(self, handle: ProcessHandle) -> PollResult:
        if handle.process is None:
            return PollResult(still_running=False, exit_code=MISSING_EXECUTABLE_EXIT_CODE)
        exit_code = handle.process.poll()
        return PollResult(still_running=exit_code is None, exit_code=exit_code)

    def wait(
        self,
        handle: ProcessHandle,
        on_tick: Optional[OnTick] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunOutcome:
        """
        Block until the process exits, is cancelled, times out, or *on_tick* returns False.

        *on_tick* runs once per poll interval on the calling thread. If it raises,
        the process is killed before the exception propagates.
        """
        request = handle.request
        if not handle.launched:
            return RunOutcome(
                command=handle.command,
                exit_code=MISSING_EXECUTABLE_EXIT_CODE if handle.launch_error == REASON_MISSING_EXECUTABLE else 1,
                reason=handle.launch_error,
                message=handle.launch_message,
            )

        interval = max(request.poll_interval_seconds, MIN_POLL_INTERVAL_SECONDS)
        deadline = handle.started_at + request.max_runtime_seconds if request.max_runtime_seconds else None
        reason: Optional[str] = None
        message = ""

        try:
            while True:
                if self._sleep(handle, interval, cancel_event):
                    break
                if cancel_event is not None and cancel_event.is_set():
                    reason, message = REASON_CANCELLED, f"{request.tool_name} run cancelled"
                elif deadline is not None and self._clock() >= deadline:
                    reason = REASON_TIMEOUT
                    message = f"{request.tool_name} exceeded the maximum runtime of {request.max_runtime_seconds} seconds"
                elif on_tick is not None and on_tick(handle) is False:
                    reason, message = REASON_ABORTED, f"{request.tool_name} run aborted"
                if reason is not None:
                    LOGGER.warning("%s; terminating process %s", message, handle.process.pid)
                    self.terminate(handle)
                    break
        except BaseException:
            LOGGER.error("Monitoring %s failed; terminating process %s", request.tool_name, handle.process.pid)
            self.terminate(handle)
            self._finish(handle)
            raise

        exit_code = handle.process.wait()
        self._finish(handle)
        elapsed = self._clock() - handle.started_at
        LOGGER.info("%s exited with code %s after %.1f seconds", request.tool_name, exit_code, elapsed)
        return RunOutcome(
            command=handle.command,
            exit_code=exit_code,
            reason=reason,
            console_path=request.console_output_path,
            used_argument_file=handle.uses_argument_file,
            elapsed_seconds=elapsed,
            message=message,
        )

    def run(self, request: RunRequest, on_tick: Optional[OnTick] = None, cancel_event: Optional[threading.Event] = None) -> RunOutcome:
        return self.wait(self.launch(request), on_tick=on_tick, cancel_event=cancel_event)

    def terminate(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process is None or process.poll() is not None:
            return
        process.kill()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            LOGGER.error("Process %s did not exit after kill", process.pid)

    def console_text(self, handle: ProcessHandle) -> str:
        """Current console output of *handle*, from the file or the in-memory cache."""
        path = handle.request.console_output_path
        if handle._reader is None and path is not None and path.exists():
            return path.read_text(encoding="utf-8", errors="replace")
        return handle.cached_output()

    def _sleep(self, handle: ProcessHandle, interval: float, cancel_event: Optional[threading.Event]) -> bool:
        """Wait up to *interval*; True when the process exited meanwhile."""
        end = self._clock() + interval
        while True:
            if handle.process.poll() is not None:
                return True
            if cancel_event is not None and cancel_event.is_set():
                return False
            remaining = end - self._clock()
            if remaining <= 0:
                return False
            slice_seconds = min(WAIT_SLICE_SECONDS, remaining)
            if cancel_event is not None:
                cancel_event.wait(slice_seconds)
            else:
                try:
                    handle.process.wait(timeout=slice_seconds)
                except subprocess.TimeoutExpired:
                    pass

    def _finish(self, handle: ProcessHandle) -> None:
        if handle._reader is not None:
            handle._reader.join(timeout=10)
            path = handle.request.console_output_path
            if path is not None:
                path.write_text(handle.cached_output(), encoding="utf-8")
        self._release(handle)
        if handle.argument_file is not None:
            delete_file_with_retries(handle.argument_file)

    def _discard(self, handle: ProcessHandle) -> None:
        """Clean up after a launch that never produced a process."""
        self._release(handle)
        if handle.argument_file is not None:
            delete_file_with_retries(handle.argument_file)

    @staticmethod
    def _release(handle: ProcessHandle) -> None:
        if handle._stream is not None:
            handle._stream.close()
            handle._stream = None

    def _write_argument_file(self, request: RunRequest, arguments: str) -> Path:
        index = len(list(request.working_dir.glob(f"{request.tool_name}_Args_*.txt"))) + 1
        path = request.working_dir / f"{request.tool_name}_Args_{index:02d}.txt"
        path.write_text(arguments + "\n", encoding="utf-8")
        LOGGER.debug("Arguments exceed %d characters; written to %s", self._max_inline, path)
        return path


def _pump(handle: ProcessHandle) -> None:
    process = handle.process
    if process is None or process.stdout is None:
        return
    for line in process.stdout:
        with handle._buffer_lock:
            handle._buffer.append(line)
    process.stdout.close()

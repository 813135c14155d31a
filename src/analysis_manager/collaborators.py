"""
Interfaces the run state machine consumes, plus local-filesystem implementations.

The DMS framework supplies its own versions of these collaborators; the local
ones below back the CLI and the test suite.
"""
from __future__ import annotations

import fnmatch
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from .fileops import copy_file_with_retries
from .persistence import SQLiteRunStore


LOGGER = logging.getLogger("analysis_manager.collaborators")

WORKDIR_FILE_INFO = "_DMS_WorkDir_File_Info_.tsv"


@runtime_checkable
class ResourceProvider(Protocol):
    def retrieve_file(self, name: str, source_location: Path) -> bool:
        ...

    def retrieve_spectra(self, spectra_type: str) -> bool:
        ...


@runtime_checkable
class StatusPublisher(Protocol):
    def publish(self, percent_complete: float, units_processed: int, state_label: str) -> None:
        ...


@runtime_checkable
class ArchiveOnFailure(Protocol):
    def copy_partial_results(self, working_dir: Path) -> None:
        ...


@runtime_checkable
class ResultTransfer(Protocol):
    def copy_results_to_durable_storage(self, working_dir: Path, manifest: Sequence[Path]) -> bool:
        ...


class LocalResourceProvider:
    """Copy inputs from local directories into the job's working directory."""

    SPECTRA_EXTENSIONS = {
        "raw": ("*.raw",),
        "mzml": ("*.mzML", "*.mzml"),
        "mzxml": ("*.mzXML", "*.mzxml"),
        "dta": ("*_dta.txt",),
        "peaks": ("*.txt", "*.csv"),
    }

    def __init__(self, work_dir: Path, spectra_dir: Optional[Path] = None) -> None:
        self._work_dir = Path(work_dir)
        self._spectra_dir = Path(spectra_dir) if spectra_dir else None

    def retrieve_file(self, name: str, source_location: Path) -> bool:
        source = Path(source_location) / name
        if not source.is_file():
            LOGGER.error("Input file not found: %s", source)
            return False
        return copy_file_with_retries(source, self._work_dir / name)

    def retrieve_spectra(self, spectra_type: str) -> bool:
        if self._spectra_dir is None or not self._spectra_dir.is_dir():
            LOGGER.error("Spectra directory is not defined or missing: %s", self._spectra_dir)
            return False
        patterns = self.SPECTRA_EXTENSIONS.get(spectra_type.lower(), (f"*.{spectra_type}",))
        matches = sorted(
            path for path in self._spectra_dir.iterdir()
            if path.is_file() and any(fnmatch.fnmatch(path.name, pattern) for pattern in patterns)
        )
        if not matches:
            LOGGER.error("No %s spectra found in %s", spectra_type, self._spectra_dir)
            return False
        return all(copy_file_with_retries(path, self._work_dir / path.name) for path in matches)


class LoggingStatusPublisher:
    """Write status updates to the log; used when no status channel is configured."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or LOGGER
        self.published = 0

    def publish(self, percent_complete: float, units_processed: int, state_label: str) -> None:
        self.published += 1
        self._logger.info("Status: %.1f%% complete, %d units, state %s", percent_complete, units_processed, state_label)


class StoreStatusPublisher:
    """Persist status updates into the run history database."""

    def __init__(self, store: SQLiteRunStore, run_id: str) -> None:
        self._store = store
        self._run_id = run_id

    def publish(self, percent_complete: float, units_processed: int, state_label: str) -> None:
        self._store.record_status(self._run_id, percent_complete, units_processed, state_label)


class FailedResultsArchiver:
    """
    Preserve a failed run's working directory for postmortem.

    A listing of every file is written to ``_DMS_WorkDir_File_Info_.tsv`` and the
    directory is copied to ``<failed results dir>/<folder name>``, replacing any
    copy left by an earlier attempt.
    """

    def __init__(self, failed_results_dir: Path, folder_name: str, skip_patterns: Iterable[str] = ()) -> None:
        self._failed_results_dir = Path(failed_results_dir)
        self._folder_name = folder_name
        self._skip_patterns = tuple(skip_patterns)

    @property
    def target_dir(self) -> Path:
        return self._failed_results_dir / self._folder_name

    def copy_partial_results(self, working_dir: Path) -> None:
        working_dir = Path(working_dir)
        if not working_dir.exists():
            LOGGER.warning("Nothing to archive; %s does not exist", working_dir)
            return
        write_file_info(working_dir)
        target = self.target_dir
        if target.exists():
            shutil.rmtree(target)
        LOGGER.warning("Copying partial results from %s to %s", working_dir, target)
        shutil.copytree(working_dir, target, ignore=shutil.ignore_patterns(*self._skip_patterns))


class DirectoryResultTransfer:
    """Copy the result manifest into ``<transfer dir>/<dataset folder>/<output folder>``."""

    def __init__(self, transfer_root: Path, dataset_folder: str, output_folder: str) -> None:
        self._target = Path(transfer_root) / dataset_folder / output_folder

    @property
    def target_dir(self) -> Path:
        return self._target

    def copy_results_to_durable_storage(self, working_dir: Path, manifest: Sequence[Path]) -> bool:
        working_dir = Path(working_dir)
        copied = 0
        for path in manifest:
            source = Path(path)
            if not source.is_absolute():
                source = working_dir / source
            try:
                relative = source.relative_to(working_dir)
            except ValueError:
                relative = Path(source.name)
            if not copy_file_with_retries(source, self._target / relative):
                return False
            copied += 1
        LOGGER.info("Copied %d result file(s) to %s", copied, self._target)
        return True


def write_file_info(working_dir: Path) -> Path:
    """List every file below *working_dir* in a tab-separated file-info report."""
    working_dir = Path(working_dir)
    info_path = working_dir / WORKDIR_FILE_INFO
    rows: List[str] = ["Date\tSize\tFile\tSubdirectory"]
    for path in sorted(working_dir.rglob("*")):
        if not path.is_file() or path == info_path:
            continue
        stat = path.stat()
        modified = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
        subdirectory = str(path.parent.relative_to(working_dir))
        rows.append(f"{modified}\t{stat.st_size}\t{path.name}\t{'' if subdirectory == '.' else subdirectory}")
    info_path.write_text("\n".join(rows) + "\n", encoding="utf-8")
    return info_path

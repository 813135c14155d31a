from __future__ import annotations

import fnmatch
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConcatenationError


LOGGER = logging.getLogger("analysis_manager.postprocess")

JOB_DIRECTORY_PATTERN = re.compile(r"^Job(\d+)$", re.IGNORECASE)
JOB_COLUMN = "Job"
LOG_SEPARATOR = "-" * 80


@dataclass
class LocateResult:
    matches: List[Path]

    @property
    def single(self) -> Optional[Path]:
        return self.matches[0] if len(self.matches) == 1 else None


def locate_artifacts(
    work_dir: Path,
    pattern: str,
    recursive: bool = False,
    exclude: Sequence[str] = (),
) -> LocateResult:
    """Find files named like *pattern* in *work_dir*, optionally in its subdirectories."""
    work_dir = Path(work_dir)
    candidates = work_dir.rglob(pattern) if recursive else work_dir.glob(pattern)
    matches = sorted(
        path for path in candidates
        if path.is_file() and not any(fnmatch.fnmatch(path.name, skip) for skip in exclude)
    )
    return LocateResult(matches=matches)


def rename_to_canonical(
    work_dir: Path,
    pattern: str,
    canonical_name: str,
    recursive: bool = True,
    exclude: Sequence[str] = (),
) -> Tuple[Optional[Path], str]:
    """
    Move the single artifact matching *pattern* to ``work_dir / canonical_name``.

    Tools such as Formularity write their report into a dated subdirectory, so the
    search recurses by default. Returns ``(path, "")`` on success or ``(None, message)``.
    """
    located = locate_artifacts(work_dir, pattern, recursive=recursive, exclude=exclude)
    if not located.matches:
        return None, f"Results file not found: {pattern}"
    if len(located.matches) > 1:
        names = ", ".join(path.name for path in located.matches)
        return None, f"Found {len(located.matches)} files matching {pattern}; expected exactly one: {names}"

    source = located.matches[0]
    target = Path(work_dir) / canonical_name
    if source != target:
        if target.exists():
            target.unlink()
        shutil.move(str(source), str(target))
        LOGGER.info("Renamed %s to %s", source.name, target.name)
    return target, ""


def find_job_directories(root: Path) -> Dict[int, Path]:
    """Return the ``Job<N>`` subdirectories of *root* keyed by job number."""
    jobs: Dict[int, Path] = {}
    root = Path(root)
    if not root.is_dir():
        return jobs
    for path in root.iterdir():
        match = JOB_DIRECTORY_PATTERN.match(path.name)
        if match and path.is_dir():
            jobs[int(match.group(1))] = path
    return dict(sorted(jobs.items()))


def collect_job_files(root: Path, suffix: str, exclude_suffixes: Sequence[str] = ()) -> Dict[int, Path]:
    """Pick the file ending in *suffix* from each ``Job<N>`` folder under *root*."""
    collected: Dict[int, Path] = {}
    suffix_lower = suffix.lower()
    excluded = [item.lower() for item in exclude_suffixes]
    for job, folder in find_job_directories(root).items():
        matches = sorted(
            path for path in folder.iterdir()
            if path.is_file()
            and path.name.lower().endswith(suffix_lower)
            and not any(path.name.lower().endswith(item) for item in excluded)
        )
        if not matches:
            continue
        if len(matches) > 1:
            LOGGER.warning("Job %d has %d files ending in %s; using %s", job, len(matches), suffix, matches[0].name)
        collected[job] = matches[0]
    return collected


def concatenate_result_files(job_files: Mapping[int, Path], output_path: Path) -> int:
    """
    Merge tab-delimited per-job result files into *output_path*.

    The first file's header decides the layout: when it already starts with a
    ``Job`` column every row is copied verbatim, otherwise ``Job`` is added as the
    first column and each data row is prefixed with its job number. Headers of
    later files and blank lines are skipped. Returns the number of data rows written.
    """
    if not job_files:
        raise ConcatenationError("No result files to concatenate")

    output_path = Path(output_path)
    has_job_column: Optional[bool] = None
    rows_written = 0

    with output_path.open("w", encoding="utf-8", newline="") as writer:
        for job, path in sorted(job_files.items()):
            if not Path(path).exists():
                raise ConcatenationError(f"Result file for job {job} not found: {path}")
            with Path(path).open("r", encoding="utf-8", errors="replace") as reader:
                header_seen = False
                for raw_line in reader:
                    line = raw_line.rstrip("\r\n")
                    if not line.strip():
                        continue
                    if not header_seen:
                        header_seen = True
                        if has_job_column is None:
                            has_job_column = _starts_with_job_column(line)
                            writer.write(line if has_job_column else f"{JOB_COLUMN}\t{line}")
                            writer.write("\n")
                        continue
                    writer.write(line if has_job_column else f"{job}\t{line}")
                    writer.write("\n")
                    rows_written += 1

    LOGGER.info("Wrote %d data rows from %d file(s) to %s", rows_written, len(job_files), output_path.name)
    return rows_written


def concatenate_log_files(
    job_logs: Mapping[int, Iterable[Path]],
    output_path: Path,
    processing_minutes: Optional[Mapping[Path, float]] = None,
    skip_prefixes: Sequence[str] = (),
) -> Path:
    """
    Merge per-job console logs into one file, separated by job headers.

    Lines starting with one of *skip_prefixes* (progress chatter) are dropped;
    *processing_minutes* is keyed by log file path.
    """
    output_path = Path(output_path)
    minutes = processing_minutes or {}
    with output_path.open("w", encoding="utf-8") as writer:
        for job, logs in sorted(job_logs.items()):
            for log_path in sorted(Path(p) for p in logs):
                if not log_path.exists():
                    continue
                writer.write(f"{LOG_SEPARATOR}\n")
                writer.write(f"Job: {job}\n")
                writer.write(f"Log: {log_path.name}\n")
                with log_path.open("r", encoding="utf-8", errors="replace") as reader:
                    for raw_line in reader:
                        line = raw_line.rstrip("\r\n")
                        if any(line.startswith(prefix) for prefix in skip_prefixes):
                            continue
                        writer.write(line + "\n")
                if log_path in minutes:
                    writer.write(f"Processing time: {minutes[log_path]:.2f} minutes\n")
                writer.write("\n")
    return output_path


def build_manifest(work_dir: Path, skip_patterns: Sequence[str] = (), recursive: bool = False) -> List[Path]:
    """List result files in *work_dir* that are not excluded by *skip_patterns*."""
    work_dir = Path(work_dir)
    candidates = work_dir.rglob("*") if recursive else work_dir.iterdir()
    return sorted(
        path for path in candidates
        if path.is_file() and not any(fnmatch.fnmatch(path.name, pattern) for pattern in skip_patterns)
    )


def _starts_with_job_column(header: str) -> bool:
    first = header.split("\t", 1)[0].strip().lower()
    return first == JOB_COLUMN.lower()

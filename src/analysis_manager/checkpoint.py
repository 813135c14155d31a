from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .fileops import delete_file_with_retries
from .models import CheckpointKey


LOGGER = logging.getLogger("analysis_manager.checkpoint")

CHECKPOINT_SUFFIX = ".tmp"
METADATA_SUFFIX = ".json"
STAGING_SUFFIX = ".new"


@dataclass(frozen=True)
class ResumePointScanner:
    """
    Locate the last fully written unit in a line-oriented result file.

    A line matching one of ``unit_patterns`` opens a unit; a line starting with
    one of ``closing_phrases`` marks the open unit as complete.
    """

    unit_patterns: Tuple[str, ...]
    closing_phrases: Tuple[str, ...]

    def scan(self, path: Path) -> Tuple[int, int]:
        """Return ``(last_completed_unit, line_count_through_that_unit)``; zeros when none."""
        patterns = [re.compile(pattern, re.IGNORECASE) for pattern in self.unit_patterns]
        phrases = [phrase.lower() for phrase in self.closing_phrases]
        current_unit = 0
        last_completed = 0
        completed_through = 0
        with Path(path).open("r", encoding="utf-8", errors="replace") as handle:
            for line_number, line in enumerate(handle, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                unit = _match_unit(patterns, stripped)
                if unit is not None:
                    current_unit = unit
                    continue
                if current_unit > 0 and any(stripped.lower().startswith(phrase) for phrase in phrases):
                    last_completed = current_unit
                    completed_through = line_number
        return last_completed, completed_through

    def find_last_completed_unit(self, path: Path) -> int:
        return self.scan(path)[0]


@dataclass
class RestoredCheckpoint:
    """A checkpoint copied back into the working directory, trimmed to its last complete unit."""

    key: CheckpointKey
    local_file: Path
    source: Path
    last_completed_unit: int
    metadata: Dict[str, object] = field(default_factory=dict)

    @property
    def resume_from(self) -> int:
        return self.last_completed_unit + 1


class CheckpointStore:
    """
    Persist partial result files to the durable transfer location.

    Checkpoints live at ``<transfer>/<dataset folder>/<output folder>/<artifact>.tmp``
    with a JSON side-car. Saves are rate limited and replace the previous copy
    atomically. Deletion is deferred: callers mark keys once a run has fully
    succeeded and purge the marked files after the job's later stages are done.
    """

    def __init__(
        self,
        transfer_root: Path,
        min_save_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transfer_root = Path(transfer_root)
        self._min_interval = float(min_save_interval_seconds)
        self._clock = clock
        self._last_save: Dict[CheckpointKey, float] = {}
        self._pending: List[Path] = []

    @property
    def transfer_root(self) -> Path:
        return self._transfer_root

    @property
    def pending_deletions(self) -> List[Path]:
        return list(self._pending)

    def checkpoint_path(self, key: CheckpointKey) -> Path:
        return self._transfer_root / key.dataset_folder / key.output_folder / f"{key.artifact_name}{CHECKPOINT_SUFFIX}"

    def metadata_path(self, key: CheckpointKey) -> Path:
        path = self.checkpoint_path(key)
        return path.with_name(path.name + METADATA_SUFFIX)

    def try_save_checkpoint(
        self,
        key: CheckpointKey,
        local_file: Path,
        last_completed_unit: Optional[int] = None,
        force: bool = False,
        preamble: Optional[Path] = None,
    ) -> bool:
        """
        Copy *local_file* to the durable location if the save interval has elapsed.

        *preamble* is written ahead of *local_file*; resumed runs pass the restored
        checkpoint so the durable copy always holds every completed unit.
        """
        now = self._clock()
        last = self._last_save.get(key)
        if not force and last is not None and now - last < self._min_interval:
            return False

        local_file = Path(local_file)
        if not local_file.exists():
            LOGGER.debug("Checkpoint skipped; %s does not exist yet", local_file)
            return False

        target = self.checkpoint_path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            _write_atomically(target, [p for p in (preamble, local_file) if p is not None])
            metadata = {
                "job": key.job,
                "artifact": key.artifact_name,
                "last_completed_unit": last_completed_unit,
                "saved_at": datetime.utcnow().isoformat(),
            }
            _write_text_atomically(self.metadata_path(key), json.dumps(metadata, indent=2))
        except OSError as exc:
            LOGGER.warning("Unable to save checkpoint %s: %s", target, exc)
            return False

        self._last_save[key] = now
        LOGGER.info("Checkpoint saved to %s", target)
        return True

    def try_restore_checkpoint(
        self,
        key: CheckpointKey,
        destination_dir: Path,
        scanner: Optional[ResumePointScanner] = None,
    ) -> Optional[RestoredCheckpoint]:
        """
        Copy the durable checkpoint for *key* into *destination_dir*.

        With a *scanner* the resume point is read from the file content and the
        local copy is trimmed after the last complete unit; otherwise the side-car
        metadata is trusted. Returns None when there is nothing usable to resume.
        """
        source = self.checkpoint_path(key)
        if not source.exists():
            return None

        metadata = self._read_metadata(key)
        local_file = Path(destination_dir) / source.name
        local_file.parent.mkdir(parents=True, exist_ok=True)

        if scanner is not None:
            last_completed, line_count = scanner.scan(source)
            if last_completed <= 0:
                LOGGER.warning("Checkpoint %s has no completed units; starting from scratch", source)
                return None
            _copy_head(source, local_file, line_count)
        else:
            recorded = metadata.get("last_completed_unit")
            if not isinstance(recorded, int) or recorded <= 0:
                LOGGER.warning("Checkpoint %s has no recorded resume point; starting from scratch", source)
                return None
            last_completed = recorded
            shutil.copyfile(source, local_file)

        LOGGER.info("Resuming from checkpoint %s after unit %d", source, last_completed)
        return RestoredCheckpoint(
            key=key,
            local_file=local_file,
            source=source,
            last_completed_unit=last_completed,
            metadata=metadata,
        )

    def mark_safe_to_delete(self, key: CheckpointKey) -> None:
        for path in (self.checkpoint_path(key), self.metadata_path(key)):
            if path not in self._pending:
                self._pending.append(path)
        LOGGER.debug("Checkpoint %s scheduled for deletion", key.artifact_name)

    def delete_marked(self) -> List[Path]:
        """Delete every scheduled checkpoint file; failures stay scheduled."""
        deleted: List[Path] = []
        remaining: List[Path] = []
        for path in self._pending:
            if delete_file_with_retries(path):
                deleted.append(path)
            else:
                remaining.append(path)
        self._pending = remaining
        return deleted

    def _read_metadata(self, key: CheckpointKey) -> Dict[str, object]:
        path = self.metadata_path(key)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable checkpoint metadata %s: %s", path, exc)
            return {}


def merge_resumed_output(restored_file: Path, artifact: Path) -> None:
    """Prepend the restored checkpoint content to the artifact written by the resumed run."""
    artifact = Path(artifact)
    parts = [Path(restored_file)]
    if artifact.exists():
        parts.append(artifact)
    _write_atomically(artifact, parts)


def _match_unit(patterns: Sequence[re.Pattern], line: str) -> Optional[int]:
    for pattern in patterns:
        match = pattern.search(line)
        if match:
            try:
                return int(match.group(1))
            except (IndexError, ValueError):
                return None
    return None


def _write_atomically(target: Path, sources: Sequence[Path]) -> None:
    staging = target.with_name(target.name + STAGING_SUFFIX)
    with staging.open("wb") as writer:
        for source in sources:
            with Path(source).open("rb") as reader:
                shutil.copyfileobj(reader, writer)
    os.replace(staging, target)


def _write_text_atomically(target: Path, text: str) -> None:
    staging = target.with_name(target.name + STAGING_SUFFIX)
    staging.write_text(text, encoding="utf-8")
    os.replace(staging, target)


def _copy_head(source: Path, target: Path, line_count: int) -> None:
    with source.open("r", encoding="utf-8", errors="replace") as reader, target.open("w", encoding="utf-8") as writer:
        for line_number, line in enumerate(reader, start=1):
            if line_number > line_count:
                break
            writer.write(line if line.endswith("\n") else line + "\n")

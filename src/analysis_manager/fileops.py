from __future__ import annotations

import logging
import shutil
from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential


LOGGER = logging.getLogger("analysis_manager.fileops")

FILE_OPERATION_ATTEMPTS = 3


@retry(
    stop=stop_after_attempt(FILE_OPERATION_ATTEMPTS),
    wait=wait_exponential(multiplier=0.25, min=0.25, max=2),
    retry=retry_if_exception_type(OSError),
    reraise=True,
)
def _unlink(path: Path) -> None:
    path.unlink(missing_ok=True)


@retry(
    stop=stop_after_attempt(FILE_OPERATION_ATTEMPTS),
    wait=wait_exponential(multiplier=0.25, min=0.25, max=2),
    retry=retry_if_exception_type(OSError),
    reraise=True,
)
def _copy(source: Path, target: Path) -> None:
    shutil.copy2(source, target)


def delete_file_with_retries(path: Path) -> bool:
    """Delete *path*, retrying transient failures; a missing file counts as deleted."""
    target = Path(path)
    try:
        _unlink(target)
    except OSError as exc:
        LOGGER.warning("Unable to delete %s after %d attempts: %s", target, FILE_OPERATION_ATTEMPTS, exc)
        return False
    return True


def copy_file_with_retries(source: Path, target: Path, overwrite: bool = True) -> bool:
    source = Path(source)
    target = Path(target)
    if target.exists() and not overwrite:
        LOGGER.debug("Skipping copy of %s; %s already exists", source, target)
        return True
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        _copy(source, target)
    except OSError as exc:
        LOGGER.error("Error copying %s to %s: %s", source, target, exc)
        return False
    return True


def possibly_quote_path(path) -> str:
    """Wrap *path* in double quotes when it contains whitespace."""
    text = str(path)
    if not text or (text.startswith('"') and text.endswith('"')):
        return text
    if any(char.isspace() for char in text):
        return f'"{text}"'
    return text


def compute_incremental_progress(start: float, end: float, sub_progress: float) -> float:
    """Map *sub_progress* (0-100) onto the slice between *start* and *end*."""
    if sub_progress < 0:
        return start
    if sub_progress >= 100:
        return end
    return start + sub_progress / 100.0 * (end - start)

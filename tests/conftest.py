import sys
import textwrap
from pathlib import Path
from typing import List, Sequence, Tuple

import pytest

from analysis_manager.config import HarnessSettings


# Prepended to fake tools so they see the same effective arguments whether they
# were passed inline or through a /R: argument file.
ARGUMENT_PREAMBLE = """
import pathlib
import sys

ARGS = sys.argv[1:]
if len(ARGS) == 1 and ARGS[0][:3] in ("/R:", "-R:"):
    ARGS = pathlib.Path(ARGS[0][3:]).read_text(encoding="utf-8").split()
"""


@pytest.fixture
def make_tool(tmp_path: Path):
    """Write an executable Python script that stands in for an external tool."""

    def _make(body: str, name: str = "fake_tool") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        script = f"#!{sys.executable}\n{ARGUMENT_PREAMBLE}\n{textwrap.dedent(body)}"
        path.write_text(script, encoding="utf-8")
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def fast_settings() -> HarnessSettings:
    return HarnessSettings(
        poll_interval_seconds=0.25,
        status_publish_interval_seconds=1000.0,
        checkpoint_interval_seconds=60.0,
    )


class RecordingPublisher:
    def __init__(self) -> None:
        self.updates: List[Tuple[float, int, str]] = []

    def publish(self, percent_complete: float, units_processed: int, state_label: str) -> None:
        self.updates.append((percent_complete, units_processed, state_label))


class RecordingArchiver:
    def __init__(self) -> None:
        self.archived: List[Path] = []

    def copy_partial_results(self, working_dir: Path) -> None:
        self.archived.append(Path(working_dir))


class RecordingTransfer:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.manifests: List[Sequence[Path]] = []

    def copy_results_to_durable_storage(self, working_dir: Path, manifest: Sequence[Path]) -> bool:
        self.manifests.append(list(manifest))
        return self.succeed


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def archiver() -> RecordingArchiver:
    return RecordingArchiver()


@pytest.fixture
def transfer() -> RecordingTransfer:
    return RecordingTransfer()

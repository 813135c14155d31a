import json
from pathlib import Path

from analysis_manager.checkpoint import CheckpointStore, merge_resumed_output
from analysis_manager.integrations.icr2ls import PEK_RESUME_SCANNER
from analysis_manager.models import CheckpointKey


PEK_CONTENT = """Processing start time: 2024-05-01 10:00
Filename: Dataset1.raw Scan.1
1021.5\t3\t0.91
Number of peaks in spectrum = 12
Scan = 2
1155.2\t2\t0.87
Number of isotopic distributions detected = 4
Scan = 3
1201.8\t2
"""


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _key() -> CheckpointKey:
    return CheckpointKey(dataset_folder="Dataset1", output_folder="ICR_Job42", artifact_name="Dataset1.pek", job=42)


def _write_pek(path: Path, content: str = PEK_CONTENT) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_scanner_finds_last_closed_unit(tmp_path: Path):
    pek = _write_pek(tmp_path / "Dataset1.pek")
    assert PEK_RESUME_SCANNER.scan(pek) == (2, 7)


def test_checkpoint_round_trip_trims_to_last_completed_unit(tmp_path: Path):
    store = CheckpointStore(tmp_path / "transfer")
    key = _key()
    local = _write_pek(tmp_path / "work" / "Dataset1.pek")

    assert store.try_save_checkpoint(key, local, last_completed_unit=2)

    saved = tmp_path / "transfer" / "Dataset1" / "ICR_Job42" / "Dataset1.pek.tmp"
    assert store.checkpoint_path(key) == saved
    assert saved.read_text(encoding="utf-8") == PEK_CONTENT
    assert not list(saved.parent.glob("*.new"))
    metadata = json.loads(store.metadata_path(key).read_text(encoding="utf-8"))
    assert metadata["last_completed_unit"] == 2
    assert metadata["job"] == 42

    fresh = CheckpointStore(tmp_path / "transfer")
    restored = fresh.try_restore_checkpoint(key, tmp_path / "retry", PEK_RESUME_SCANNER)

    assert restored is not None
    assert restored.last_completed_unit == 2
    assert restored.resume_from == 3
    lines = restored.local_file.read_text(encoding="utf-8").splitlines()
    assert lines[-1] == "Number of isotopic distributions detected = 4"
    assert "Scan = 3" not in lines


def test_restore_without_scanner_uses_metadata(tmp_path: Path):
    store = CheckpointStore(tmp_path / "transfer")
    key = _key()
    store.try_save_checkpoint(key, _write_pek(tmp_path / "work" / "Dataset1.pek"), last_completed_unit=5)

    restored = store.try_restore_checkpoint(key, tmp_path / "retry")

    assert restored is not None
    assert restored.last_completed_unit == 5


def test_restore_returns_none_without_usable_checkpoint(tmp_path: Path):
    store = CheckpointStore(tmp_path / "transfer")
    key = _key()
    assert store.try_restore_checkpoint(key, tmp_path / "retry", PEK_RESUME_SCANNER) is None

    store.try_save_checkpoint(key, _write_pek(tmp_path / "work" / "Dataset1.pek", "Scan = 1\n1021.5\n"))
    assert store.try_restore_checkpoint(key, tmp_path / "retry", PEK_RESUME_SCANNER) is None


def test_saves_are_rate_limited(tmp_path: Path):
    clock = FakeClock()
    store = CheckpointStore(tmp_path / "transfer", min_save_interval_seconds=60, clock=clock)
    key = _key()
    local = _write_pek(tmp_path / "work" / "Dataset1.pek")

    assert store.try_save_checkpoint(key, local)
    clock.now = 10
    assert not store.try_save_checkpoint(key, local)
    assert store.try_save_checkpoint(key, local, force=True)
    clock.now = 71
    assert store.try_save_checkpoint(key, local)


def test_save_skips_missing_local_file(tmp_path: Path):
    store = CheckpointStore(tmp_path / "transfer")
    assert not store.try_save_checkpoint(_key(), tmp_path / "work" / "absent.pek")
    assert not store.checkpoint_path(_key()).exists()


def test_deletion_is_deferred_until_purged(tmp_path: Path):
    store = CheckpointStore(tmp_path / "transfer")
    key = _key()
    store.try_save_checkpoint(key, _write_pek(tmp_path / "work" / "Dataset1.pek"))

    store.mark_safe_to_delete(key)
    assert store.checkpoint_path(key).exists()
    assert store.pending_deletions == [store.checkpoint_path(key), store.metadata_path(key)]

    deleted = store.delete_marked()

    assert set(deleted) == {store.checkpoint_path(key), store.metadata_path(key)}
    assert not store.checkpoint_path(key).exists()
    assert store.pending_deletions == []


def test_merge_resumed_output_prepends_restored_units(tmp_path: Path):
    restored = _write_pek(tmp_path / "Dataset1.pek.tmp", "Scan = 1\nNumber of peaks in spectrum = 3\n")
    artifact = _write_pek(tmp_path / "Dataset1.pek", "Scan = 2\nNumber of peaks in spectrum = 4\n")

    merge_resumed_output(restored, artifact)

    assert artifact.read_text(encoding="utf-8").splitlines() == [
        "Scan = 1",
        "Number of peaks in spectrum = 3",
        "Scan = 2",
        "Number of peaks in spectrum = 4",
    ]

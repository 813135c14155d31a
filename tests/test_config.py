import json
from pathlib import Path

import pytest

from analysis_manager.config import build_paths, load_config
from analysis_manager.context import JobContext
from analysis_manager.errors import ConfigError


def test_load_config_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config(None)

    assert config.paths == build_paths(tmp_path)
    assert config.harness.poll_interval_seconds == 4.0
    assert config.harness.checkpoint_interval_seconds == 60.0
    assert config.harness.max_inline_argument_length == 250
    assert config.paths.failed_results_dir.name == "DMS_FailedResults"


def test_load_config_applies_overrides(tmp_path: Path):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "environment": "test",
                "verbose": True,
                "paths": {"root": str(tmp_path / "root"), "transfer_dir": str(tmp_path / "share")},
                "harness": {"status_publish_interval_seconds": 5, "unknown_key": 1},
                "tools": {"icr2ls": "~/bin/ICR2LS"},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.environment == "test"
    assert config.verbose is True
    assert config.paths.transfer_dir == tmp_path / "share"
    assert config.paths.db_path == tmp_path / "root" / "var" / "runs.sqlite"
    assert config.harness.status_publish_interval_seconds == 5
    assert not hasattr(config.harness, "unknown_key")
    assert config.tool_path("icr2ls") == Path("~/bin/ICR2LS").expanduser()
    assert config.tool_path("formularity") is None
    assert config.to_dict()["paths"]["transfer_dir"] == str(tmp_path / "share")


def test_load_config_rejects_invalid_json(tmp_path: Path):
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(config_path)


def test_job_context_from_file(tmp_path: Path):
    job_file = tmp_path / "job.json"
    job_file.write_text(
        json.dumps(
            {
                "job": "77",
                "dataset": "Dataset1",
                "step_tool": "ICR2LS",
                "program_path": "/opt/icr2ls/ICR2LS",
                "params": {"scan_start": "10", "skip_ms2": "True", "poll_interval_seconds": "2.5"},
            }
        ),
        encoding="utf-8",
    )

    context = JobContext.from_file(job_file, tmp_path)

    assert context.job == 77
    assert context.output_folder == "ICR2LS_Job77"
    assert context.dataset_folder == "Dataset1"
    assert context.program_path == Path("/opt/icr2ls/ICR2LS")
    assert context.get_int_param("scan_start") == 10
    assert context.get_bool_param("skip_ms2") is True
    assert context.get_float_param("poll_interval_seconds") == 2.5
    assert context.get_int_param("missing", 3) == 3


def test_job_context_requires_job_and_dataset(tmp_path: Path):
    with pytest.raises(ConfigError):
        JobContext.from_dict({"dataset": "Dataset1"}, tmp_path)


def test_derived_context_shares_cancellation(tmp_path: Path):
    parent = JobContext(job=1, dataset="Pkg", work_dir=tmp_path)
    child = parent.derive(job=2, dataset="Dataset2", work_dir=tmp_path / "Job2")

    parent.cancel()

    assert child.cancelled
    assert child.job == 2 and parent.job == 1

import json
import sqlite3
from pathlib import Path

from click.testing import CliRunner

from analysis_manager.cli import main


FORMULARITY_TOOL = """
import pathlib
print("Warning: scan 2, no data points found")
pathlib.Path("Dataset1_Result.csv").write_text("Mass,Formula\\n301.1,C15H20O6\\n", encoding="utf-8")
"""


def _write_config(tmp_path: Path, tool: Path) -> Path:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "paths": {"root": str(tmp_path)},
                "harness": {"poll_interval_seconds": 0.25},
                "tools": {"formularity": str(tool)},
            }
        ),
        encoding="utf-8",
    )
    return config_path


def _write_job(tmp_path: Path, scans: int = 2) -> Path:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    (work_dir / "Formularity.xml").write_text("<parameters/>", encoding="utf-8")
    (work_dir / "CIA_DB.bin").write_text("db", encoding="utf-8")
    for scan in range(1, scans + 1):
        (work_dir / f"Dataset1_scan{scan}.xml").write_text("<peaks/>", encoding="utf-8")
    job_params = tmp_path / "job.json"
    job_params.write_text(
        json.dumps(
            {
                "job": 1001,
                "dataset": "Dataset1",
                "step_tool": "Formularity",
                "params": {"parameter_file": "Formularity.xml", "cia_db_name": "CIA_DB.bin", "poll_interval_seconds": 0.25},
            }
        ),
        encoding="utf-8",
    )
    return job_params


def test_cli_run_formularity(tmp_path: Path, make_tool):
    config_path = _write_config(tmp_path, make_tool(FORMULARITY_TOOL))
    job_params = _write_job(tmp_path)

    result = CliRunner().invoke(
        main,
        [
            "run",
            "formularity",
            "--job-params",
            str(job_params),
            "--work-dir",
            str(tmp_path / "work"),
            "--config",
            str(config_path),
            "--run-id",
            "run-test",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "closeout: SUCCESS" in result.output
    assert "1 / 2 scans had no peaks" in result.output
    transferred = tmp_path / "var" / "transfer" / "Dataset1" / "Formularity_Job1001" / "Dataset1_Report.csv"
    assert transferred.exists()
    with sqlite3.connect(tmp_path / "var" / "runs.sqlite") as conn:
        row = conn.execute("SELECT status, closeout_code FROM runs WHERE run_id = 'run-test'").fetchone()
        updates = conn.execute("SELECT COUNT(*) FROM status_updates WHERE run_id = 'run-test'").fetchone()[0]
        events = {row[0] for row in conn.execute("SELECT event_type FROM run_events WHERE run_id = 'run-test'")}
    assert row == ("succeeded", 0)
    assert updates >= 2
    assert events == {"closeout"}


def test_cli_run_failure_exits_non_zero_and_archives(tmp_path: Path, make_tool):
    config_path = _write_config(tmp_path, make_tool("import sys\nprint('Error: licence expired')\nsys.exit(1)\n"))
    job_params = _write_job(tmp_path)

    result = CliRunner().invoke(
        main,
        ["run", "formularity", "--job-params", str(job_params), "--work-dir", str(tmp_path / "work"), "--config", str(config_path)],
    )

    assert result.exit_code == 1
    assert "closeout: FAILED" in result.output
    archived = tmp_path / "var" / "DMS_FailedResults" / "Formularity_Job1001"
    assert (archived / "_DMS_WorkDir_File_Info_.tsv").exists()
    assert (archived / "Formularity_ConsoleOutput.txt").exists()


def test_cli_rejects_invalid_job_parameters(tmp_path: Path):
    job_params = tmp_path / "job.json"
    job_params.write_text("{not json", encoding="utf-8")
    (tmp_path / "work").mkdir()
    config_path = _write_config(tmp_path, tmp_path / "bin" / "ICR2LS")

    result = CliRunner().invoke(
        main,
        ["run", "icr2ls", "--job-params", str(job_params), "--work-dir", str(tmp_path / "work"), "--config", str(config_path)],
    )

    assert result.exit_code != 0
    assert "not valid JSON" in result.output


def test_cli_concatenate(tmp_path: Path):
    for job in (1, 2, 3):
        folder = tmp_path / f"Job{job}"
        folder.mkdir()
        rows = "".join(f"{i}\tPEP{i}\n" for i in range(5))
        (folder / f"Data{job}_syn_ascore.txt").write_text(f"ResultID\tPeptide\n{rows}", encoding="utf-8")

    result = CliRunner().invoke(main, ["concatenate", str(tmp_path), "--suffix", "_ascore.txt"])

    assert result.exit_code == 0, result.output
    assert "Wrote 15 data rows" in result.output
    lines = (tmp_path / "Concatenated_ascore.txt").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 16


def test_cli_resume_point(tmp_path: Path):
    pek = tmp_path / "Dataset1.pek.tmp"
    pek.write_text("Scan = 4\nNumber of peaks in spectrum = 2\nScan = 5\n", encoding="utf-8")

    result = CliRunner().invoke(main, ["resume-point", str(pek)])

    assert result.exit_code == 0, result.output
    assert "Last completed unit: 4" in result.output
    assert "resume from 5" in result.output

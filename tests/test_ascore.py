from pathlib import Path

from analysis_manager.context import JobContext
from analysis_manager.integrations.ascore import AScoreAggregator, AScoreJobIntegration, resolve_search_tool
from analysis_manager.models import CloseoutCode, FailureKind, RunState


ASCORE_TOOL = """
import pathlib
options = {arg[:3]: arg[3:] for arg in ARGS}
source = pathlib.Path(options["-F:"])
stem = source.name[: -len(".txt")]
print("AScore 1.2")
print("Percent Completion 50%")
print("Skipping PHRP result 7")
print("Percent Completion 100%")
rows = [line.split("\\t")[0] for line in source.read_text(encoding="utf-8").splitlines()[1:]]
table = "ResultID\\tAScore\\n" + "".join(f"{row}\\t19.5\\n" for row in rows)
(pathlib.Path(options["-O:"]) / f"{stem}_ascore.txt").write_text(table, encoding="utf-8")
pathlib.Path(options["-U:"]).write_text("ResultID\\tPeptide\\n" + "".join(f"{row}\\tPEP\\n" for row in rows), encoding="utf-8")
"""


def _job_folder(root: Path, job: int, dataset: str, syn_suffix: str = "_msgfplus_syn.txt", spectrum: bool = True) -> Path:
    folder = root / f"Job{job}"
    folder.mkdir(parents=True)
    (folder / f"{dataset}{syn_suffix}").write_text("ResultID\tPeptide\n1\tPEP\n2\tPEPT\n", encoding="utf-8")
    if spectrum:
        (folder / f"{dataset}_dta.txt").write_text("spectra", encoding="utf-8")
    return folder


def _context(root: Path, tool: Path, settings, jobs, **params) -> JobContext:
    values = {
        "ascore_param_file": "AScore_Params.xml",
        "job_dataset_map": {str(job): dataset for job, dataset in jobs.items()},
        "job_tool_map": {str(job): "msgfplus" for job in jobs},
        "poll_interval_seconds": 0.25,
    }
    values.update(params)
    return JobContext(
        job=500,
        dataset="DataPackage_12",
        work_dir=root,
        step_tool="AScore",
        program_path=tool,
        params=values,
        settings=settings,
    )


def _package(tmp_path: Path) -> Path:
    root = tmp_path / "package"
    root.mkdir()
    (root / "AScore_Params.xml").write_text("<params/>", encoding="utf-8")
    return root


def test_resolve_search_tool():
    assert resolve_search_tool("MSGFPlus_MzML").syn_suffix == "_msgfplus_syn.txt"
    assert resolve_search_tool("XTandem").ascore_tool == "xtandem"
    assert resolve_search_tool("mascot") is None


def test_job_integration_maps_progress_into_its_window(tmp_path: Path):
    integration = AScoreJobIntegration(
        tmp_path / "A_syn.txt", tmp_path / "A_dta.txt", tmp_path / "p.xml", "sequest", "Job1", progress_window=(50, 75)
    )
    assert integration.map_progress(0) == 50
    assert integration.map_progress(40) == 60
    assert integration.map_progress(100) == 75
    assert integration.output_name == "A_syn_ascore.txt"
    assert integration.console_output_file == "AScore_ConsoleOutput_Job1.txt"


def test_aggregator_concatenates_every_job(tmp_path, make_tool, fast_settings, publisher, transfer):
    root = _package(tmp_path)
    jobs = {101: "DatasetA", 102: "DatasetB"}
    for job, dataset in jobs.items():
        _job_folder(root, job, dataset)
    context = _context(root, make_tool(ASCORE_TOOL), fast_settings, jobs)

    aggregator = AScoreAggregator(publisher=publisher, transfer=transfer)
    result = aggregator.execute(context)

    assert result.code is CloseoutCode.SUCCESS, result.message
    assert result.evaluation_message == ""
    lines = (root / "Concatenated_ascore.txt").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Job\tResultID\tAScore"
    assert [line.split("\t")[0] for line in lines[1:]] == ["101", "101", "102", "102"]
    plus = (root / "Concatenated_plus_ascore.txt").read_text(encoding="utf-8").splitlines()
    assert len(plus) == 5
    log_text = (root / "AScore_LogFile.txt").read_text(encoding="utf-8")
    assert "Job: 102" in log_text and "Percent Completion" not in log_text
    assert {path.name for path in transfer.manifests[0]} == {
        "Concatenated_ascore.txt",
        "Concatenated_plus_ascore.txt",
        "AScore_LogFile.txt",
    }
    assert all(update[0] <= 100 for update in publisher.updates)
    assert publisher.updates[-1][0] == 100


def test_aggregator_skipped_jobs_are_not_fatal(tmp_path, make_tool, fast_settings):
    root = _package(tmp_path)
    jobs = {101: "DatasetA", 102: "DatasetB", 103: "DatasetC"}
    _job_folder(root, 101, "DatasetA")
    _job_folder(root, 102, "DatasetB", spectrum=False)
    _job_folder(root, 103, "DatasetC")
    _job_folder(root, 104, "DatasetD")
    context = _context(root, make_tool(ASCORE_TOOL), fast_settings, jobs)

    result = AScoreAggregator().execute(context)

    assert result.code is CloseoutCode.SUCCESS, result.message
    assert result.failure_kind is FailureKind.PARTIAL_DATA_WARNING
    assert result.evaluation_message == "2 / 4 jobs could not be processed"
    jobs_written = {line.split("\t")[0] for line in (root / "Concatenated_ascore.txt").read_text(encoding="utf-8").splitlines()[1:]}
    assert jobs_written == {"101", "103"}


def test_aggregator_requires_parameter_file(tmp_path, make_tool, fast_settings, archiver):
    root = tmp_path / "package"
    root.mkdir()
    _job_folder(root, 101, "DatasetA")
    context = _context(root, make_tool(ASCORE_TOOL), fast_settings, {101: "DatasetA"})

    result = AScoreAggregator(archiver=archiver).execute(context)

    assert result.code is CloseoutCode.NO_PARAM_FILE
    assert archiver.archived == []


def test_aggregator_without_jobs_fails_and_archives(tmp_path, make_tool, fast_settings, archiver):
    root = _package(tmp_path)
    context = _context(root, make_tool(ASCORE_TOOL), fast_settings, {})

    result = AScoreAggregator(archiver=archiver).execute(context)

    assert result.code is CloseoutCode.FAILED
    assert result.state is RunState.FAILED
    assert archiver.archived == [root]


def test_aggregator_all_jobs_failing_is_no_data(tmp_path, make_tool, fast_settings, archiver):
    root = _package(tmp_path)
    _job_folder(root, 101, "DatasetA")
    failing = make_tool("import sys\nprint('error: spectrum file is corrupt')\nsys.exit(2)\n")
    context = _context(root, failing, fast_settings, {101: "DatasetA"})

    aggregator = AScoreAggregator(archiver=archiver)
    result = aggregator.execute(context)

    assert result.code is CloseoutCode.NO_DATA
    assert result.evaluation_message == "The job could not be processed"
    assert aggregator.sub_results[101].code is CloseoutCode.FAILED
    assert archiver.archived == []

from __future__ import annotations

import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .checkpoint import CheckpointStore
from .collaborators import DirectoryResultTransfer, FailedResultsArchiver, LocalResourceProvider, StoreStatusPublisher
from .config import AppConfig, load_config
from .context import JobContext
from .errors import AnalysisManagerError
from .integrations.registry import AGGREGATORS, available, build_integration, is_aggregator
from .logging_config import configure_logging
from .models import CloseoutCode, CloseoutResult
from .persistence import SQLiteRunStore
from .postprocess import collect_job_files, concatenate_result_files
from .state_machine import RunStateMachine

console = Console()

NON_FAILING_CODES = {CloseoutCode.SUCCESS, CloseoutCode.NO_DATA}


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="analysis-manager", message="Analysis Manager %(version)s")
def main() -> None:
    """Run external analysis tools under the DMS plugin harness."""


@main.command()
@click.argument("integration_name", metavar="INTEGRATION", type=click.Choice(available(), case_sensitive=False))
@click.option("--job-params", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--work-dir", type=click.Path(file_okay=False, path_type=Path), required=True)
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None)
@click.option("--spectra-dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="Directory to retrieve spectra from.")
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
@click.option("--rich-logs", is_flag=True, default=False, help="Render log records with Rich.")
@click.option("--run-id", type=str, default=None, help="Override generated run identifier.")
def run(
    integration_name: str,
    job_params: Path,
    work_dir: Path,
    config_path: Optional[Path],
    spectra_dir: Optional[Path],
    verbose: bool,
    rich_logs: bool,
    run_id: Optional[str],
) -> None:
    """Run one integration for the job described by --job-params."""

    logger = configure_logging(verbose=verbose, logger_name="analysis_manager.cli", rich_output=rich_logs)
    try:
        app_config = _prepare_config(config_path, verbose)
        context = JobContext.from_file(job_params, work_dir.resolve(), app_config.harness)
    except AnalysisManagerError as exc:
        raise click.ClickException(str(exc)) from exc
    context.verbose = verbose
    if context.program_path is None:
        context.program_path = app_config.tool_path(integration_name.lower())

    run_id = run_id or _generate_run_id()
    store = SQLiteRunStore(app_config.paths.db_path)
    store.record_run_start(run_id, integration_name, context.job, context.dataset, str(context.work_dir), app_config.to_dict())
    logger.info("Run ID: %s", run_id)

    publisher = StoreStatusPublisher(store, run_id)
    archiver = FailedResultsArchiver(app_config.paths.failed_results_dir, context.output_folder)
    transfer = DirectoryResultTransfer(app_config.paths.transfer_dir, context.dataset_folder, context.output_folder)

    if is_aggregator(integration_name):
        aggregator = AGGREGATORS[integration_name.lower()](publisher=publisher, archiver=archiver, transfer=transfer)
        result = aggregator.execute(context)
    else:
        checkpoints = CheckpointStore(app_config.paths.transfer_dir, app_config.harness.checkpoint_interval_seconds)
        machine = RunStateMachine(
            checkpoints=checkpoints,
            resources=LocalResourceProvider(context.work_dir, spectra_dir),
            publisher=publisher,
            archiver=archiver,
            transfer=transfer,
        )
        result = machine.execute(context, build_integration(integration_name))
        if result.succeeded:
            for path in checkpoints.delete_marked():
                logger.debug("Deleted checkpoint file %s", path)

    store.record_run_complete(
        run_id,
        result.state.value,
        int(result.code),
        result.message,
        evaluation_message=result.evaluation_message,
    )
    store.record_event(run_id, "closeout", result.message or result.code.name, result.to_dict())
    _print_summary(run_id, integration_name, result)
    if result.code not in NON_FAILING_CODES:
        sys.exit(1)


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--suffix", required=True, help="File name suffix to gather from each Job<N> folder, e.g. _ascore.txt")
@click.option("--exclude-suffix", multiple=True, help="Ignore files ending with this suffix.")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
def concatenate(root: Path, suffix: str, exclude_suffix, output: Optional[Path]) -> None:
    """Merge the per-job result files under ROOT into one table with a Job column."""

    configure_logging(logger_name="analysis_manager.cli")
    files = collect_job_files(root, suffix, exclude_suffix)
    if not files:
        raise click.ClickException(f"No Job folders under {root} contain a file ending in {suffix}")
    output_path = output or root / f"Concatenated{suffix}"
    try:
        rows = concatenate_result_files(files, output_path)
    except AnalysisManagerError as exc:
        raise click.ClickException(str(exc)) from exc

    table = Table(title="Concatenated Results", show_lines=False)
    table.add_column("Job", justify="right")
    table.add_column("File")
    for job, path in files.items():
        table.add_row(str(job), str(path))
    console.print(table)
    click.echo(f"Wrote {rows} data rows to {output_path}")


@main.command("resume-point")
@click.argument("checkpoint_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--integration", "integration_name", default="icr2ls", show_default=True)
def resume_point(checkpoint_file: Path, integration_name: str) -> None:
    """Print the last fully written unit of a checkpoint file."""

    try:
        integration = build_integration(integration_name)
    except KeyError as exc:
        raise click.ClickException(str(exc.args[0])) from exc
    if integration.resume_scanner is None:
        raise click.ClickException(f"{integration.name} does not support checkpoint resume")
    last_completed, line_count = integration.resume_scanner.scan(checkpoint_file)
    if last_completed <= 0:
        click.echo("No completed units found")
        return
    click.echo(f"Last completed unit: {last_completed} (line {line_count}); resume from {last_completed + 1}")


def _prepare_config(config_path: Optional[Path], verbose: bool) -> AppConfig:
    config = load_config(config_path, verbose=verbose)
    config.paths.data_dir.mkdir(parents=True, exist_ok=True)
    config.paths.transfer_dir.mkdir(parents=True, exist_ok=True)
    return config


def _generate_run_id() -> str:
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    suffix = uuid.uuid4().hex[:6]
    return f"run-{timestamp}-{suffix}"


def _print_summary(run_id: str, integration_name: str, result: CloseoutResult) -> None:
    click.echo("")
    colour = "green" if result.code in NON_FAILING_CODES else "yellow"
    click.echo(click.style(f"Run {run_id} ({integration_name}) closeout: {result.code.name}", fg=colour))
    if result.message:
        click.echo(f" - message: {result.message}")
    if result.evaluation_message:
        click.echo(f" - evaluation: {result.evaluation_message}")
    if result.status is not None:
        click.echo(f" - progress: {result.status.percent_complete:.1f}%")


if __name__ == "__main__":  # pragma: no cover
    main()

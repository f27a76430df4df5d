"""
CLI commands for donor imports and the import worker.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import ScriptInfo, with_appcontext

from donor_app.exceptions import DonorAppError, ImportJobError
from donor_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from donor_app.importer.pipeline.job_service import ImportJobService
from donor_app.importer.tasks import dispatch_import_job, run_import_job
from donor_app.models import DedupStrategy, ImportJobStatus


def _is_enabled(app) -> bool:
    return bool(app.config.get("IMPORTER_ENABLED", False))


@click.group(name="importer", invoke_without_command=True)
@with_appcontext
@click.pass_context
def importer_cli(ctx):
    """
    Donor import commands.

    Lists the most recent jobs when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not _is_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        jobs = ImportJobService().list_jobs(limit=10)
        if not jobs:
            click.echo("No import jobs recorded.")
            return
        for job in jobs:
            status = ImportJobStatus(job.status).value
            click.echo(f"{job.id}  {status:<10}  {job.processed_rows}/{job.total_rows}  {job.file_name}")


def get_disabled_importer_group() -> click.Group:
    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _load_mapping(value: str) -> dict:
    """Accept inline JSON or a path to a JSON file."""
    candidate = Path(value)
    text = candidate.read_text(encoding="utf-8") if candidate.is_file() else value
    try:
        mapping = json.loads(text)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Mapping is not valid JSON: {exc}", param_hint="--mapping") from exc
    if not isinstance(mapping, dict):
        raise click.BadParameter("Mapping must be a JSON object of {target: column}.", param_hint="--mapping")
    return mapping


def _format_summary(summary: dict) -> str:
    return (
        f"Job {summary['jobId']} finished with status {summary['status']}.\n"
        f"  total_rows     : {summary['totalRows']}\n"
        f"  processed_rows : {summary['processedRows']}\n"
        f"  successful_rows: {summary['successfulRows']}\n"
        f"  created_rows   : {summary['createdRows']}\n"
        f"  updated_rows   : {summary['updatedRows']}\n"
        f"  skipped_rows   : {summary['skippedRows']}\n"
        f"  error_rows     : {summary['errorRows']}\n"
        f"  failed_batches : {summary['failedBatches']}"
    )


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="CSV or TSV file to import.",
)
@click.option("--mapping", required=True, help="Field mapping JSON ({target: column}) or a path to a JSON file.")
@click.option(
    "--strategy",
    type=click.Choice([member.value for member in DedupStrategy]),
    default=DedupStrategy.SKIP.value,
    show_default=True,
    help="How rows matching existing donors are handled.",
)
@click.option("--name", help="Job name (defaults to the file name).")
@click.option("--batch-size", type=click.IntRange(min=1), help="Rows per batch.")
@click.option("--user", "user_id", help="Identity recorded as the job owner.")
@click.option(
    "--inline/--no-inline",
    default=True,
    show_default=True,
    help="Run in this process (default) or enqueue to the importer worker.",
)
@click.option(
    "--summary-json",
    is_flag=True,
    help="Emit the import summary as JSON.",
)
def importer_run(
    file_path: Path,
    mapping: str,
    strategy: str,
    name: Optional[str],
    batch_size: Optional[int],
    user_id: Optional[str],
    inline: bool,
    summary_json: bool,
):
    """Create an import job for FILE and process it."""
    app = current_app._get_current_object()
    field_mapping = _load_mapping(mapping)
    resolved = file_path.resolve()

    try:
        job = ImportJobService().create_job(
            file_name=resolved.name,
            file_size=resolved.stat().st_size,
            field_mapping=field_mapping,
            dedup_strategy=strategy,
            name=name,
            batch_size=batch_size,
            created_by=user_id,
            ingest_params={"file_path": str(resolved), "keep_file": True},
        )
    except DonorAppError as exc:
        raise click.ClickException(exc.message) from exc

    if not inline:
        result = dispatch_import_job(app, job.id, str(resolved), keep_file=True)
        if result["mode"] == "queued":
            click.echo(f"Queued import job {job.id} (task {result['taskId']}).")
            return
        summary = result.get("summary")
        if summary is None:
            raise click.ClickException(f"Import job {job.id} failed: {result.get('error')}")
    else:
        try:
            summary = run_import_job(app, job.id, str(resolved), keep_file=True)
        except ImportJobError as exc:
            raise click.ClickException(f"Import job {job.id} failed: {exc.message}") from exc

    if summary_json:
        click.echo(json.dumps(summary, indent=2, sort_keys=True))
    else:
        click.echo(_format_summary(summary))


@importer_cli.command("status")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Emit the full status payload as JSON.")
def importer_status(job_id: str, as_json: bool):
    """Show progress for JOB_ID."""
    service = ImportJobService()
    try:
        snapshot = service.progress_snapshot(service.get_job(job_id))
    except DonorAppError as exc:
        raise click.ClickException(exc.message) from exc

    if as_json:
        click.echo(json.dumps(snapshot, indent=2, sort_keys=True, default=str))
        return
    eta = snapshot["estimatedTimeRemaining"]
    click.echo(
        f"Job {snapshot['id']} is {snapshot['status']} ({snapshot['progress']}%): "
        f"{snapshot['processedRows']}/{snapshot['totalRows']} rows, "
        f"{snapshot['errorRows']} errors, {snapshot['skippedRows']} skipped"
        + (f", ~{eta}s remaining" if eta is not None else "")
    )


@importer_cli.command("cancel")
@click.argument("job_id")
@click.option("--reason", default="Cancelled from CLI", show_default=True)
def importer_cancel(job_id: str, reason: str):
    """Request cancellation of JOB_ID; a running import stops after its current batch."""
    try:
        job = ImportJobService().cancel_job(job_id, reason)
    except DonorAppError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"Import job {job.id} cancelled.")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))

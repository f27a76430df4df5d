"""
Importer Celery tasks.

``process_import_job`` runs the batch processor for a stored upload inside
the Flask app context. ``enqueue_import_job`` hands a job to the worker; the
HTTP API always goes through it. ``dispatch_import_job`` is the CLI entry
point: it enqueues when the worker is enabled and otherwise runs the import
in the calling process.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from celery import shared_task
from flask import Flask, current_app

from donor_app.exceptions import ImportJobError
from donor_app.importer.celery_app import get_celery_app
from donor_app.importer.pipeline.orchestrator import build_import_processor
from donor_app.importer.utils import cleanup_upload

PROCESS_TASK_NAME = "importer.pipeline.process_import_job"


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": current_app.config.get("APP_VERSION"),
    }


@shared_task(name=PROCESS_TASK_NAME, bind=True)
def process_import_job(self, *, job_id: str, file_path: str, keep_file: bool = False) -> dict[str, Any]:
    """Process a stored upload for ``job_id``; returns the import summary."""
    current_app.logger.info(
        "Importer task started",
        extra={"import_job_id": job_id, "importer_task_id": self.request.id},
    )
    return run_import_job(current_app, job_id, file_path, keep_file=keep_file)


def run_import_job(app: Flask, job_id: str, file_path: str, *, keep_file: bool = False) -> dict[str, Any]:
    """
    Read ``file_path`` and run the processor for ``job_id``.

    The upload is removed afterwards unless ``keep_file`` is set. Job-level
    failures are recorded on the job by the processor and re-raised.
    """
    path = Path(file_path)
    processor = build_import_processor(app)
    try:
        try:
            content = path.read_bytes()
        except OSError as exc:
            processor.fail(job_id, exc)
            raise
        return processor.run(job_id, content, path.name).to_dict()
    finally:
        if not keep_file:
            cleanup_upload(path)


def enqueue_import_job(app: Flask, job_id: str, file_path: str, *, keep_file: bool = False) -> dict[str, Any]:
    """Queue ``process_import_job`` on the importer worker and return the task id."""
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise RuntimeError("Importer worker is not configured; cannot enqueue import job.")
    async_result = celery_app.tasks[PROCESS_TASK_NAME].apply_async(
        kwargs={"job_id": job_id, "file_path": str(file_path), "keep_file": keep_file}
    )
    app.logger.info(
        "Import job enqueued",
        extra={"import_job_id": job_id, "importer_task_id": async_result.id},
    )
    return {"mode": "queued", "taskId": async_result.id}


def dispatch_import_job(app: Flask, job_id: str, file_path: str, *, keep_file: bool = False) -> dict[str, Any]:
    """
    Start processing ``job_id``.

    Queues the Celery task when ``IMPORTER_WORKER_ENABLED``; otherwise runs
    the import inline and reports its summary or failure message.
    """
    state = app.extensions.get("importer") or {}
    if state.get("worker_enabled"):
        return enqueue_import_job(app, job_id, file_path, keep_file=keep_file)

    try:
        summary = run_import_job(app, job_id, file_path, keep_file=keep_file)
    except ImportJobError as exc:
        return {"mode": "inline", "error": exc.message}
    return {"mode": "inline", "summary": summary}


__all__ = [
    "importer_healthcheck",
    "process_import_job",
    "run_import_job",
    "enqueue_import_job",
    "dispatch_import_job",
]

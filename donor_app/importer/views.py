"""
Importer blueprint: health checks, upload preview and dry-run validation,
and the import job API.
"""

from __future__ import annotations

import json
import os
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, Response, current_app, jsonify, request

from donor_app.exceptions import DonorAppError, JobNotFoundError
from donor_app.importer.pipeline.dry_run import ImportValidator, preview_upload
from donor_app.importer.pipeline.duplicates import DuplicateDetector
from donor_app.importer.pipeline.job_service import ImportJobService
from donor_app.importer.tasks import enqueue_import_job
from donor_app.importer.utils import allowed_file, cleanup_upload, persist_upload
from donor_app.models import ImportJob
from donor_app.routes.errors import current_user_id, json_error, register_error_handlers

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .parsers import SUPPORTED_EXTENSIONS, TabularFileParser

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")
register_error_handlers(importer_blueprint)

MAX_LIST_LIMIT = 200


@importer_blueprint.get("/health")
def importer_healthcheck():
    """Lightweight health endpoint proving the importer blueprint mounted correctly."""
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "supported_extensions": list(SUPPORTED_EXTENSIONS),
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """Validate importer worker availability via the heartbeat task."""
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled or not worker_enabled:
        payload["status"] = "disabled"
        if enabled:
            payload["message"] = "Worker flag disabled; uploads are refused and only `flask importer run` imports inline. Set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    payload["status"] = "ok"
    return jsonify(payload), 200


def _upload_size(file_storage) -> int:
    stream = file_storage.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


def _checked_upload():
    """Return ``(file_storage, size, None)``, or ``(None, 0, error response)`` when the upload is unusable."""
    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        return None, 0, json_error("No file uploaded.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(file_storage.filename):
        return (
            None,
            0,
            json_error(
                f"Invalid file type. Allowed extensions: {', '.join(SUPPORTED_EXTENSIONS)}.",
                HTTPStatus.BAD_REQUEST,
            ),
        )

    size = _upload_size(file_storage)
    max_mb = current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 50)
    if size > int(max_mb) * 1024 * 1024:
        return None, 0, json_error(f"File too large. Maximum size is {max_mb}MB.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    return file_storage, size, None


def _parse_mapping(raw: str | None) -> dict:
    if not raw:
        raise ValueError("A field mapping is required.")
    mapping = json.loads(raw)
    if not isinstance(mapping, dict):
        raise ValueError("Field mapping must be a JSON object of {target: column}.")
    return mapping


def _form_strategy() -> str | None:
    return request.form.get("strategy") or request.form.get("dedupStrategy")


def _owned_job(service: ImportJobService, job_id: str) -> ImportJob:
    """Jobs owned by another caller are reported as missing."""
    job = service.get_job(job_id)
    user_id = current_user_id()
    if user_id is not None and job.created_by not in (None, user_id):
        raise JobNotFoundError(job_id)
    return job


@importer_blueprint.post("/preview")
def importer_preview_upload():
    """Headers, row count and the first rows of an upload; nothing is stored."""
    file_storage, size, rejection = _checked_upload()
    if rejection is not None:
        return rejection
    parsed = TabularFileParser().parse_file(file_storage.read(), file_storage.filename)
    return (
        jsonify({"fileName": file_storage.filename, "fileSize": size, **preview_upload(parsed)}),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/validate")
def importer_validate_upload():
    """Dry run: map, validate and duplicate-check rows and predict each row's action."""
    file_storage, size, rejection = _checked_upload()
    if rejection is not None:
        return rejection
    try:
        field_mapping = _parse_mapping(request.form.get("fieldMapping") or request.form.get("field_mapping"))
    except ValueError as exc:
        return json_error(str(exc), HTTPStatus.BAD_REQUEST)

    parsed = TabularFileParser().parse_file(file_storage.read(), file_storage.filename)
    limit = int(current_app.config.get("IMPORTER_VALIDATE_MAX_ROWS", 100))
    max_rows = min(request.form.get("maxRows", type=int) or limit, limit)
    validator = ImportValidator(DuplicateDetector.from_config(current_app.config), max_rows=max_rows)
    report = validator.validate(parsed.rows, field_mapping, _form_strategy())
    return jsonify({"fileName": file_storage.filename, "fileSize": size, **report}), HTTPStatus.OK


@importer_blueprint.post("/jobs")
def importer_create_job():
    """
    Store the upload, create a pending job and queue it on the importer worker.

    The response is returned as soon as the job is queued; callers poll
    ``GET /jobs/<id>`` for progress. Without a worker uploads are refused with
    503 (``flask importer run`` processes files inline).
    """
    file_storage, size, rejection = _checked_upload()
    if rejection is not None:
        return rejection
    try:
        field_mapping = _parse_mapping(request.form.get("fieldMapping") or request.form.get("field_mapping"))
    except ValueError as exc:
        return json_error(str(exc), HTTPStatus.BAD_REQUEST)

    if not current_app.extensions.get("importer", {}).get("worker_enabled", False):
        return json_error(
            "Importer worker is disabled; set IMPORTER_WORKER_ENABLED=true or use `flask importer run`.",
            HTTPStatus.SERVICE_UNAVAILABLE,
        )

    stored_path = persist_upload(file_storage, current_app)
    service = ImportJobService()
    try:
        job = service.create_job(
            file_name=file_storage.filename,
            file_size=size,
            field_mapping=field_mapping,
            dedup_strategy=_form_strategy(),
            name=request.form.get("name"),
            description=request.form.get("description"),
            batch_size=request.form.get("batchSize", type=int),
            created_by=current_user_id(),
            ingest_params={"file_path": str(stored_path), "keep_file": False},
        )
    except DonorAppError:
        cleanup_upload(stored_path)
        raise

    try:
        dispatch = enqueue_import_job(current_app, job.id, str(stored_path), keep_file=False)
    except Exception as exc:
        current_app.logger.exception(
            "Failed to enqueue import job",
            extra={"import_job_id": job.id, "user_id": current_user_id()},
        )
        cleanup_upload(stored_path)
        service.fail_job(job.id, f"Failed to enqueue import job: {exc}")
        return json_error(
            "Failed to enqueue import; please retry later.",
            HTTPStatus.INTERNAL_SERVER_ERROR,
            importId=job.id,
        )

    service.session.refresh(job)
    current_app.logger.info(
        "Import job submitted",
        extra={"import_job_id": job.id, "importer_task_id": dispatch["taskId"], "user_id": current_user_id()},
    )
    return (
        jsonify(
            {
                "importId": job.id,
                "jobName": job.name,
                "status": job.to_dict()["status"],
                "dispatch": dispatch,
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@importer_blueprint.get("/jobs")
def importer_list_jobs():
    limit = min(max(request.args.get("limit", 50, type=int) or 50, 1), MAX_LIST_LIMIT)
    service = ImportJobService()
    jobs = service.list_jobs(owner=current_user_id(), limit=limit)
    return jsonify({"jobs": [service.progress_snapshot(job) for job in jobs], "limit": limit}), HTTPStatus.OK


@importer_blueprint.get("/jobs/<job_id>")
def importer_job_status(job_id: str):
    service = ImportJobService()
    return jsonify(service.progress_snapshot(_owned_job(service, job_id))), HTTPStatus.OK


@importer_blueprint.get("/jobs/<job_id>/errors")
def importer_job_errors(job_id: str):
    """Full error report; ``?format=csv`` downloads the row errors as CSV."""
    service = ImportJobService()
    job = _owned_job(service, job_id)
    if (request.args.get("format") or "").lower() == "csv":
        return Response(
            service.error_report_csv(job),
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="import-errors-{job.id}.csv"'},
        )
    return jsonify(service.error_report(job)), HTTPStatus.OK


@importer_blueprint.post("/jobs/<job_id>/cancel")
def importer_cancel_job(job_id: str):
    service = ImportJobService()
    job = _owned_job(service, job_id)
    payload = request.get_json(silent=True) or {}
    reason = payload.get("reason") or request.form.get("reason") or "Cancelled by user"
    service.cancel_job(job.id, reason, user_id=current_user_id())
    return jsonify({"message": "Import job cancelled successfully", "job": service.progress_snapshot(job)}), HTTPStatus.OK

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from donor_app.exceptions import InvalidTransitionError, JobNotFoundError, ValidationError
from donor_app.importer.pipeline.job_service import ImportJobService, resolve_dedup_strategy
from donor_app.models import AuditLog, DedupStrategy, ImportJobStatus, db


def test_create_job_normalizes_mapping_and_defaults(job_factory):
    job = job_factory(field_mapping={"firstName": "First", "last_name": "Last", "email": "  "}, dedup_strategy=None)

    assert job.status == ImportJobStatus.PENDING
    assert job.field_mapping == {"first_name": "First", "last_name": "Last"}
    assert job.dedup_strategy == DedupStrategy.SKIP
    assert job.name == "Import: donors.csv"
    assert job.file_type == "csv"
    assert job.errors == [] and job.warnings == []


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"file_name": ""}, "file_name"),
        ({"field_mapping": {"favouriteColour": "Colour"}}, "field_mapping"),
        ({"field_mapping": {"firstName": ""}}, "field_mapping"),
        ({"batch_size": 0}, "batch_size"),
        ({"dedup_strategy": "merge_everything"}, "dedup_strategy"),
    ],
)
def test_create_job_rejects_invalid_input(job_factory, overrides, field):
    with pytest.raises(ValidationError) as excinfo:
        job_factory(**overrides)
    assert excinfo.value.field == field


def test_resolve_dedup_strategy_accepts_values_and_members():
    assert resolve_dedup_strategy("update") is DedupStrategy.UPDATE
    assert resolve_dedup_strategy(DedupStrategy.CREATE_NEW) is DedupStrategy.CREATE_NEW
    assert resolve_dedup_strategy("") is DedupStrategy.SKIP


def test_get_job_raises_for_unknown_id(job_service):
    with pytest.raises(JobNotFoundError):
        job_service.get_job("missing")
    assert job_service.find_job("missing") is None


def test_list_jobs_filters_by_owner(job_factory, job_service):
    job_factory(created_by="alice")
    job_factory(created_by="bob")
    job_factory(created_by="alice")

    assert len(job_service.list_jobs()) == 3
    assert {job.created_by for job in job_service.list_jobs(owner="alice")} == {"alice"}
    assert len(job_service.list_jobs(owner="alice", limit=1)) == 1


def test_start_moves_pending_to_processing_once(job_factory, job_service):
    job = job_factory()

    job_service.start_job(job.id)
    db.session.refresh(job)
    assert job.status == ImportJobStatus.PROCESSING
    assert job.started_at is not None

    with pytest.raises(InvalidTransitionError) as excinfo:
        job_service.start_job(job.id)
    assert excinfo.value.current == "processing"
    assert excinfo.value.target == "processing"


def test_cancel_pending_job_records_reason(job_factory, job_service):
    job = job_factory(created_by="alice")

    job_service.cancel_job(job.id, "Wrong file", user_id="alice")

    db.session.refresh(job)
    assert job.status == ImportJobStatus.CANCELLED
    assert job.cancel_reason == "Wrong file"
    assert job.completed_at is not None
    assert job.errors[-1]["error"] == "Job cancelled: Wrong file"
    entry = AuditLog.query.filter_by(action="import_cancelled", entity_id=job.id).one()
    assert entry.user_id == "alice"
    assert entry.metadata_json["reason"] == "Wrong file"


def test_terminal_jobs_reject_further_transitions(job_factory, job_service):
    job = job_factory()
    job_service.cancel_job(job.id)

    with pytest.raises(InvalidTransitionError):
        job_service.cancel_job(job.id)
    with pytest.raises(InvalidTransitionError):
        job_service.start_job(job.id)
    assert job_service.complete_job(job.id, {}) is False
    assert job_service.fail_job(job.id, "late failure") is False

    db.session.refresh(job)
    assert job.status == ImportJobStatus.CANCELLED


def test_complete_and_fail_are_guarded(job_factory, job_service):
    job = job_factory()
    assert job_service.complete_job(job.id, {"jobId": job.id}) is False

    job_service.start_job(job.id)
    assert job_service.fail_job(job.id, "disk full", details={"type": "OSError"}) is True
    db.session.refresh(job)
    assert job.status == ImportJobStatus.FAILED
    assert job.error_summary == "disk full"
    assert job.errors[-1]["details"] == {"type": "OSError"}


def test_record_progress_only_applies_while_processing(job_factory, job_service):
    job = job_factory()
    assert job_service.record_progress(job.id, processed_rows=5) is False

    job_service.start_job(job.id)
    assert job_service.record_progress(job.id, total_rows=10, processed_rows=5, errors=[{"row": 1}]) is True
    db.session.commit()
    db.session.refresh(job)
    assert job.processed_rows == 5
    assert job.errors == [{"row": 1}]

    with pytest.raises(ValueError):
        job_service.record_progress(job.id, status="completed")


def test_record_progress_after_cancel_keeps_cancel_entry(job_factory, job_service):
    job = job_factory()
    job_service.start_job(job.id)
    job_service.cancel_job(job.id, "stop")

    assert job_service.record_progress(job.id, processed_rows=40, errors=[]) is False
    db.session.commit()
    db.session.refresh(job)
    assert job.processed_rows == 40
    assert job.errors[-1]["error"] == "Job cancelled: stop"


def test_update_job_limits_fields(job_factory, job_service):
    job = job_factory()
    job_service.update_job(job.id, name="Spring appeal", notes="first pass")
    assert job.name == "Spring appeal"

    with pytest.raises(ValidationError):
        job_service.update_job(job.id, status="completed")

    job_service.cancel_job(job.id)
    job_service.update_job(job.id, notes="cancelled on purpose")
    with pytest.raises(InvalidTransitionError):
        job_service.update_job(job.id, name="Renamed")


def test_progress_snapshot_reports_percent_and_eta(job_factory):
    started = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    service = ImportJobService(db.session, clock=lambda: started)
    job = service.create_job(file_name="donors.csv", field_mapping={"firstName": "First"})
    service.start_job(job.id)
    service.record_progress(
        job.id,
        total_rows=400,
        processed_rows=100,
        errors=[{"row": index} for index in range(150)],
        warnings=[{"row": index} for index in range(80)],
    )
    db.session.commit()
    db.session.refresh(job)

    snapshot = service.progress_snapshot(job, now=started + timedelta(seconds=10))

    assert snapshot["progress"] == 25
    assert snapshot["estimatedTimeRemaining"] == 30
    assert len(snapshot["errors"]) == 100
    assert snapshot["errors"][0] == {"row": 50}
    assert len(snapshot["warnings"]) == 50
    assert snapshot["status"] == "processing"


def test_progress_snapshot_without_rows(job_factory, job_service):
    job = job_factory()
    snapshot = job_service.progress_snapshot(job)
    assert snapshot["progress"] == 0
    assert snapshot["estimatedTimeRemaining"] is None


def test_is_cancel_requested_reads_stored_status(job_factory, job_service):
    job = job_factory()
    assert job_service.is_cancel_requested(job.id) is False

    job_service.cancel_job(job.id, "stop")

    assert job_service.is_cancel_requested(job.id) is True
    with pytest.raises(JobNotFoundError):
        job_service.is_cancel_requested("missing")

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from donor_app.exceptions import CancelledError, CatastrophicBatchError, ParseError
from donor_app.models import AuditLog, Donor, ImportJobStatus, db


def _run(processor, job, content, filename="donors.csv", **kwargs):
    return processor.run(job.id, content, filename, **kwargs)


def test_large_import_reports_every_batch(job_factory, processor_factory, csv_builder, donor_rows):
    job = job_factory(batch_size=100)
    progress_events = []

    summary = _run(
        processor_factory(),
        job,
        csv_builder(donor_rows(1000)),
        on_batch=progress_events.append,
    )

    assert summary.status == "completed"
    assert len(progress_events) == 10
    assert [event["batch"] for event in progress_events] == list(range(1, 11))
    assert progress_events[-1]["processedRows"] == 1000
    assert all(event["totalBatches"] == 10 for event in progress_events)

    db.session.refresh(job)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.processed_rows == job.total_rows == 1000
    assert job.successful_rows == job.created_rows == 1000
    assert job.batches_processed == 10
    assert job.summary_json["totalRows"] == 1000
    assert Donor.query.count() == 1000


def test_processed_rows_grow_monotonically(job_factory, processor_factory, csv_builder, donor_rows):
    job = job_factory(batch_size=7)
    seen = []

    _run(processor_factory(), job, csv_builder(donor_rows(30)), on_batch=lambda event: seen.append(event["processedRows"]))

    assert seen == sorted(seen)
    assert seen[-1] == 30
    assert len(seen) == 5


def test_cancel_stops_after_current_batch(job_factory, job_service, processor_factory, csv_builder, donor_rows):
    job = job_factory(batch_size=100)

    def cancel_after_third(event):
        if event["batch"] == 3:
            job_service.cancel_job(event["jobId"], "Operator requested stop")

    summary = _run(processor_factory(), job, csv_builder(donor_rows(1000)), on_batch=cancel_after_third)

    assert summary.cancelled
    assert summary.processed_rows == 300
    db.session.refresh(job)
    assert job.status == ImportJobStatus.CANCELLED
    assert job.processed_rows == 300
    assert job.total_rows == 1000
    assert job.cancel_reason == "Operator requested stop"
    assert job.errors[-1]["error"] == "Job cancelled: Operator requested stop"
    assert Donor.query.count() == 300


def test_cancelled_job_cannot_start(job_factory, job_service, processor_factory, csv_builder, donor_rows):
    job = job_factory()
    job_service.cancel_job(job.id)

    with pytest.raises(CancelledError):
        _run(processor_factory(), job, csv_builder(donor_rows(3)))

    assert Donor.query.count() == 0


def test_rows_missing_names_are_recorded_as_errors(job_factory, processor_factory, csv_builder):
    job = job_factory()
    content = csv_builder(
        [
            ("Jane", "Doe", "jane@example.org", "", "", "", ""),
            ("", "", "nobody@example.org", "", "", "", ""),
            ("John", "Roe", "", "", "", "", "wizard"),
            ("Mary", "Major", "", "", "", "", "alumni"),
        ]
    )

    summary = _run(processor_factory(), job, content)

    assert summary.status == "completed"
    assert summary.processed_rows == 4
    assert summary.successful_rows == 2
    assert summary.error_rows == 2

    db.session.refresh(job)
    assert [entry["row"] for entry in job.errors] == [2, 3]
    assert job.errors[0]["error"] == "Missing required fields: firstName or lastName"
    assert job.errors[0]["data"]["Email"] == "nobody@example.org"
    assert "donor_type" in job.errors[1]["error"]
    assert Donor.query.filter_by(email="nobody@example.org").count() == 0
    assert Donor.query.count() == 2


def test_skip_strategy_records_duplicate_warning(job_factory, processor_factory, csv_builder, donor_factory):
    existing = donor_factory(first_name="Alice", last_name="Smith", email="alice@example.org")
    job = job_factory(dedup_strategy="skip")
    content = csv_builder(
        [
            ("Alicia", "Smythe", "ALICE@example.org", "", "", "", ""),
            ("Brand", "New", "new@example.org", "", "", "", ""),
        ]
    )

    summary = _run(processor_factory(), job, content)

    assert summary.skipped_rows == 1
    assert summary.created_rows == 1
    db.session.refresh(job)
    warning = job.warnings[0]
    assert warning["row"] == 1
    assert warning["warning"] == "Duplicate found (high confidence), skipped"
    assert warning["duplicateInfo"]["donorId"] == existing.id
    assert Donor.query.count() == 2


def test_duplicate_rows_within_one_file_are_skipped(job_factory, processor_factory, csv_builder):
    job = job_factory(dedup_strategy="skip")
    row = ("Sam", "Twice", "sam@example.org", "", "", "", "")

    summary = _run(processor_factory(), job, csv_builder([row, row]))

    assert summary.created_rows == 1
    assert summary.skipped_rows == 1


def test_update_strategy_merges_high_confidence_match(job_factory, processor_factory, csv_builder, donor_factory):
    existing = donor_factory(
        first_name="Alice",
        last_name="Smith",
        email="alice@example.org",
        city=None,
        lifetime_value=Decimal("250.00"),
        total_donations=3,
    )
    job = job_factory(dedup_strategy="update")
    content = csv_builder([("Alice", "Smith", "alice@example.org", "555-0100", "Springfield", "", "")])

    summary = _run(processor_factory(), job, content)

    assert summary.updated_rows == 1
    assert summary.successful_rows == 1
    assert summary.created_rows == 0
    db.session.refresh(existing)
    assert existing.city == "Springfield"
    assert existing.phone_digits == "5550100"
    assert existing.lifetime_value == Decimal("250.00")
    assert existing.total_donations == 3
    db.session.refresh(job)
    assert job.warnings[0]["warning"] == "Updated existing donor record"


def test_create_new_strategy_ignores_duplicates(job_factory, processor_factory, csv_builder, donor_factory):
    donor_factory(first_name="Alice", last_name="Smith", email="alice@example.org")
    job = job_factory(dedup_strategy="create_new")

    summary = _run(processor_factory(), job, csv_builder([("Alice", "Smith", "alice@example.org", "", "", "", "")]))

    assert summary.created_rows == 1
    assert summary.skipped_rows == 0
    assert Donor.query.filter_by(email="alice@example.org").count() == 2


def test_parse_error_fails_job(job_factory, processor_factory):
    job = job_factory()

    with pytest.raises(ParseError):
        _run(processor_factory(), job, b"")

    db.session.refresh(job)
    assert job.status == ImportJobStatus.FAILED
    assert "empty" in job.error_summary
    assert AuditLog.query.filter_by(action="import_failed", entity_id=job.id).count() == 1


def _operational_error():
    return OperationalError("INSERT INTO donors", {}, Exception("database is locked"))


def test_catastrophic_batches_fail_the_job(job_factory, processor_factory, csv_builder, donor_rows, monkeypatch):
    job = job_factory(batch_size=100)
    processor = processor_factory(max_failed_batches=1)

    def always_fail(*args, **kwargs):
        raise _operational_error()

    monkeypatch.setattr(processor, "_process_batch", always_fail)

    with pytest.raises(CatastrophicBatchError) as excinfo:
        _run(processor, job, csv_builder(donor_rows(250)))

    assert excinfo.value.failed_batches == 2
    db.session.refresh(job)
    assert job.status == ImportJobStatus.FAILED
    assert job.failed_batches == 2
    assert job.processed_rows == 200
    assert job.error_rows == 200
    assert job.errors[0]["error"].startswith("Batch processing failed:")
    assert "failed batch limit" in job.error_summary
    assert Donor.query.count() == 0


def test_single_failed_batch_is_tolerated(job_factory, processor_factory, csv_builder, donor_rows, monkeypatch, metrics):
    job = job_factory(batch_size=10)
    processor = processor_factory(max_failed_batches=3)
    real_batch = processor._process_batch
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise _operational_error()
        return real_batch(*args, **kwargs)

    monkeypatch.setattr(processor, "_process_batch", flaky)

    summary = _run(processor, job, csv_builder(donor_rows(30)))

    assert summary.status == "completed"
    assert summary.failed_batches == 1
    assert summary.error_rows == 10
    assert summary.created_rows == 20
    assert Donor.query.count() == 20
    assert metrics.sample("donor_import_batches_total", {"status": "failure"}) == 1.0
    assert metrics.sample("donor_import_batches_total", {"status": "success"}) == 2.0


def test_error_tail_is_bounded_and_messages_truncated(job_factory, processor_factory, csv_builder):
    job = job_factory(batch_size=5)
    rows = [("", "Nameless", "", "", "", "", "") for _ in range(12)]

    summary = _run(processor_factory(max_errors=5, max_message_length=20), job, csv_builder(rows))

    assert summary.error_rows == 12
    db.session.refresh(job)
    assert len(job.errors) == 5
    assert [entry["row"] for entry in job.errors] == [8, 9, 10, 11, 12]
    assert all(len(entry["error"]) <= 20 for entry in job.errors)
    assert job.errors[0]["error"].endswith("...")


def test_lifecycle_is_audited_and_counted(job_factory, processor_factory, csv_builder, donor_rows, metrics):
    job = job_factory()

    _run(processor_factory(), job, csv_builder(donor_rows(3)))

    actions = [entry.action for entry in AuditLog.query.filter_by(entity_id=job.id).order_by(AuditLog.id)]
    assert actions == ["import_started", "import_completed"]
    assert metrics.sample("donor_import_rows_total", {"outcome": "created"}) == 3.0
    assert metrics.sample("donor_import_jobs_total", {"status": "completed"}) == 1.0


def test_yield_between_batches(job_factory, processor_factory, csv_builder, donor_rows):
    job = job_factory(batch_size=2)
    naps = []

    _run(processor_factory(yield_seconds=0.25, sleep=naps.append), job, csv_builder(donor_rows(6)))

    assert naps == [0.25, 0.25]

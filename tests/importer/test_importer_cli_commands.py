from __future__ import annotations

import json

from donor_app.models import Donor, ImportJob, ImportJobStatus, db

MAPPING = json.dumps({"firstName": "First Name", "lastName": "Last Name", "email": "Email"})


def _write_csv(tmp_path, csv_builder, rows):
    path = tmp_path / "donors.csv"
    path.write_bytes(csv_builder(rows))
    return path


def test_run_imports_inline_and_keeps_source_file(runner, tmp_path, csv_builder, donor_rows):
    path = _write_csv(tmp_path, csv_builder, donor_rows(12))

    result = runner.invoke(
        args=["importer", "run", "--file", str(path), "--mapping", MAPPING, "--batch-size", "5", "--user", "ops"]
    )

    assert result.exit_code == 0, result.output
    assert "finished with status completed" in result.output
    assert "created_rows   : 12" in result.output
    assert path.exists()
    job = ImportJob.query.one()
    assert job.created_by == "ops"
    assert job.batch_size == 5
    assert job.batches_processed == 3
    assert Donor.query.count() == 12


def test_run_emits_json_summary(runner, tmp_path, csv_builder, donor_rows):
    path = _write_csv(tmp_path, csv_builder, donor_rows(2))
    mapping_file = tmp_path / "mapping.json"
    mapping_file.write_text(MAPPING)

    result = runner.invoke(
        args=["importer", "run", "--file", str(path), "--mapping", str(mapping_file), "--summary-json"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert payload["createdRows"] == 2


def test_run_rejects_bad_mapping(runner, tmp_path, csv_builder, donor_rows):
    path = _write_csv(tmp_path, csv_builder, donor_rows(1))

    invalid_json = runner.invoke(args=["importer", "run", "--file", str(path), "--mapping", "{not json"])
    assert invalid_json.exit_code != 0
    assert "not valid JSON" in invalid_json.output

    unknown_target = runner.invoke(
        args=["importer", "run", "--file", str(path), "--mapping", json.dumps({"shoeSize": "Shoe"})]
    )
    assert unknown_target.exit_code != 0
    assert "shoeSize" in unknown_target.output
    assert ImportJob.query.count() == 0


def test_run_reports_failed_jobs(runner, tmp_path):
    path = tmp_path / "empty.csv"
    path.write_bytes(b"")

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--mapping", MAPPING])

    assert result.exit_code != 0
    assert "failed" in result.output
    assert ImportJob.query.one().status == ImportJobStatus.FAILED


def test_status_and_cancel(runner, job_factory):
    job = job_factory()

    status = runner.invoke(args=["importer", "status", job.id])
    assert status.exit_code == 0, status.output
    assert f"Job {job.id} is pending (0%)" in status.output

    as_json = runner.invoke(args=["importer", "status", job.id, "--json"])
    assert json.loads(as_json.output)["status"] == "pending"

    cancelled = runner.invoke(args=["importer", "cancel", job.id, "--reason", "duplicate upload"])
    assert cancelled.exit_code == 0, cancelled.output
    db.session.refresh(job)
    assert job.status == ImportJobStatus.CANCELLED
    assert job.cancel_reason == "duplicate upload"

    again = runner.invoke(args=["importer", "cancel", job.id])
    assert again.exit_code != 0
    assert "cannot move from cancelled" in again.output


def test_status_unknown_job(runner):
    result = runner.invoke(args=["importer", "status", "nope"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_group_lists_recent_jobs(runner, job_factory):
    assert "No import jobs recorded." in runner.invoke(args=["importer"]).output

    job = job_factory(file_name="spring.csv")
    result = runner.invoke(args=["importer"])
    assert result.exit_code == 0, result.output
    assert job.id in result.output
    assert "spring.csv" in result.output

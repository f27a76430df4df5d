from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from donor_app.importer.metrics import ImporterMetrics
from donor_app.importer.pipeline.job_service import ImportJobService
from donor_app.importer.pipeline.orchestrator import build_import_processor
from donor_app.models import db

DEFAULT_MAPPING = {
    "firstName": "First Name",
    "lastName": "Last Name",
    "email": "Email",
    "phone": "Phone",
    "city": "City",
    "zipCode": "Zip",
    "donorType": "Type",
}

HEADER = "First Name,Last Name,Email,Phone,City,Zip,Type"


def make_csv(rows: list[tuple[str, ...]], header: str = HEADER) -> bytes:
    lines = [header] + [",".join(row) for row in rows]
    return ("\n".join(lines) + "\n").encode("utf-8")


def numbered_rows(count: int) -> list[tuple[str, ...]]:
    """Distinct donors that never match each other."""
    return [(f"First{i}", f"Last{i}", "", "", "", "", "community") for i in range(1, count + 1)]


@pytest.fixture
def job_service():
    return ImportJobService(db.session)


@pytest.fixture
def job_factory(job_service):
    def _factory(**overrides):
        values = {
            "file_name": "donors.csv",
            "field_mapping": DEFAULT_MAPPING,
            "dedup_strategy": "skip",
            "batch_size": 100,
        }
        values.update(overrides)
        return job_service.create_job(**values)

    return _factory


@pytest.fixture
def metrics():
    return ImporterMetrics(CollectorRegistry())


@pytest.fixture
def processor_factory(app, metrics):
    def _factory(**overrides):
        overrides.setdefault("metrics", metrics)
        return build_import_processor(app, session=db.session, **overrides)

    return _factory


@pytest.fixture
def csv_builder():
    return make_csv


@pytest.fixture
def donor_rows():
    return numbered_rows

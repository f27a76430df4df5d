# conftest.py

import os
from datetime import date

import pytest

# Set testing environment BEFORE importing app so TestingConfig is used
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from donor_app.models import Donor, DonorType, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application with a clean database"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_BATCH_YIELD_SECONDS": 0.0,
        }
    )
    flask_app.extensions["importer"]["worker_enabled"] = False

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def donor_factory():
    """Persist donors with sensible defaults; keyword arguments override them."""
    counter = {"value": 0}

    def _create(**overrides):
        counter["value"] += 1
        values = {
            "first_name": f"Donor{counter['value']}",
            "last_name": "Example",
            "donor_type": DonorType.COMMUNITY,
            "is_active": True,
        }
        values.update(overrides)
        donor = Donor(**values)
        db.session.add(donor)
        db.session.commit()
        return donor

    return _create


@pytest.fixture
def sample_donors(donor_factory):
    """A small mixed population used by segment and duplicate tests."""
    return [
        donor_factory(
            first_name="Alice",
            last_name="Alumna",
            email="alice@example.org",
            donor_type=DonorType.ALUMNI,
            alumni_year=2005,
            city="Springfield",
            zip_code="62701",
            total_donations=4,
            last_donation_date=date(2024, 3, 1),
        ),
        donor_factory(
            first_name="Bob",
            last_name="Builder",
            email="bob@example.org",
            donor_type=DonorType.ALUMNI,
            alumni_year=2015,
            city="Shelbyville",
        ),
        donor_factory(
            first_name="Carol",
            last_name="Parent",
            email=None,
            donor_type=DonorType.PARENT,
            student_name="Danny Parent",
            alumni_year=None,
            city=None,
        ),
        donor_factory(
            first_name="Dave",
            last_name="Community",
            email="dave@example.org",
            donor_type=DonorType.COMMUNITY,
            alumni_year=None,
            city="Springfield",
        ),
    ]

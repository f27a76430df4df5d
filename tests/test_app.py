import json
import logging

from flask import Flask

from donor_app.utils.logging_config import CustomJsonFormatter, setup_logging


def test_unknown_routes_return_json_404(client):
    response = client.get("/does-not-exist")
    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found"}


def test_blueprints_and_commands_are_registered(app):
    assert {"importer", "segments", "donors"} <= set(app.blueprints)
    assert {"importer", "segments"} <= set(app.cli.commands)
    assert app.extensions["importer"]["metrics"] is not None


def test_json_formatter_emits_extra_fields():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("donor_app.test", logging.INFO, __file__, 1, "Import job created", None, None)
    record.import_job_id = "job-1"

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "Import job created"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "donor_app.test"
    assert payload["import_job_id"] == "job-1"


def test_setup_logging_replaces_handlers():
    app = Flask(__name__)
    app.config.update(LOG_LEVEL="debug", LOG_FORMAT="text", ENABLE_CONSOLE_LOGGING=True)

    setup_logging(app)
    setup_logging(app)

    assert app.logger.level == logging.DEBUG
    assert len(app.logger.handlers) == 1
    assert not isinstance(app.logger.handlers[0].formatter, CustomJsonFormatter)

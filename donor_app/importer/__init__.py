"""
Donor import feature package.

Mounts the importer blueprint and CLI when ``IMPORTER_ENABLED`` is set and
keeps per-app importer state (Celery app, metrics) in
``app.extensions['importer']``.
"""

from __future__ import annotations

from flask import Flask

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .metrics import ImporterMetrics
from .pipeline.job_service import ImportJobService
from .pipeline.orchestrator import ImportJobProcessor, build_import_processor
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "get_importer_metrics",
    "ImportJobService",
    "ImportJobProcessor",
    "build_import_processor",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
            "metrics": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def get_importer_metrics(app: Flask) -> ImporterMetrics:
    state = _ensure_extension_state(app)
    if state.get("metrics") is None:
        state["metrics"] = ImporterMetrics()
    return state["metrics"]


def init_importer(app: Flask) -> None:
    """
    Conditionally mount importer blueprint and CLI based on configuration.

    Metrics are created even when the importer is disabled so the duplicate
    check endpoint can still record match counts.
    """
    enabled = bool(app.config.get("IMPORTER_ENABLED", False))
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED", False)),
        }
    )
    get_importer_metrics(app)

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    app.logger.info(
        "Importer enabled (worker %s)",
        "enabled" if state["worker_enabled"] else "disabled",
        extra={"importer_worker_enabled": state["worker_enabled"]},
    )

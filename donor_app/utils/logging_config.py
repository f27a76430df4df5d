# donor_app/utils/logging_config.py
"""
Application logging setup.

Structured JSON output (python-json-logger) is the production default; the
text formatter is used in development and tests. Fields passed through
``extra={...}`` on log calls are emitted as top-level JSON keys.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, has_request_context, request
from pythonjsonlogger import jsonlogger

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

TEXT_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding level, logger name and request context."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        if has_request_context():
            log_record.setdefault("request_path", request.path)
            log_record.setdefault("request_method", request.method)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app: Flask) -> None:
    """
    Configure ``app.logger`` from the monitoring configuration keys.

    Safe to call repeatedly; previously attached handlers are replaced.
    """
    level = LOG_LEVELS.get(str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(str(app.config.get("LOG_FORMAT", "json")))

    app.logger.handlers.clear()
    app.logger.setLevel(level)
    app.logger.propagate = True

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "donorhub.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        app.logger.addHandler(file_handler)

    # Module loggers (logging.getLogger(__name__)) share the application handlers.
    package_logger = logging.getLogger("donor_app")
    package_logger.handlers = list(app.logger.handlers)
    package_logger.setLevel(level)

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

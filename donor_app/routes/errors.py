"""
HTTP translation of application errors shared by the JSON blueprints.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from donor_app.exceptions import (
    DonorAppError,
    InvalidTransitionError,
    JobNotFoundError,
    SegmentNotFoundError,
)

USER_HEADER = "X-User-Id"


def current_user_id() -> str | None:
    """Caller identity forwarded by the fronting auth layer."""
    value = (request.headers.get(USER_HEADER) or "").strip()
    return value or None


def json_error(message: str, status: HTTPStatus, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def error_status(exc: DonorAppError) -> HTTPStatus:
    if isinstance(exc, (SegmentNotFoundError, JobNotFoundError)):
        return HTTPStatus.NOT_FOUND
    if isinstance(exc, InvalidTransitionError):
        return HTTPStatus.CONFLICT
    return HTTPStatus.BAD_REQUEST


def register_error_handlers(blueprint: Blueprint) -> None:
    @blueprint.errorhandler(DonorAppError)
    def handle_app_error(exc: DonorAppError):
        status = error_status(exc)
        current_app.logger.info(
            "Request rejected",
            extra={"error_type": type(exc).__name__, "error_status": int(status), "path": request.path},
        )
        return jsonify(exc.to_dict()), status


__all__ = ["USER_HEADER", "current_user_id", "json_error", "error_status", "register_error_handlers"]

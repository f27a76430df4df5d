"""
Donor API: duplicate checks for a prospective donor record.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from donor_app.exceptions import MalformedValueError, ValidationError
from donor_app.importer.mapping import row_from_payload
from donor_app.importer.pipeline.duplicates import DuplicateDetector, resolve_strategies

from .errors import register_error_handlers

donors_blueprint = Blueprint("donors", __name__, url_prefix="/api/donors")
register_error_handlers(donors_blueprint)


@donors_blueprint.post("/duplicates")
def check_duplicates():
    """
    Rank stored donors that may be the same person as the posted record.

    Body: donor fields keyed by name (``firstName``, ``email`` ...) plus an
    optional ``strategies`` list restricting the match strategies used.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise MalformedValueError("Request body must be a JSON object.")
    donor_fields = dict(payload.get("donor") or payload)
    strategies = donor_fields.pop("strategies", None) or payload.get("strategies")
    if strategies is not None and not isinstance(strategies, list):
        raise MalformedValueError("strategies must be a list of strategy names.")
    try:
        enabled = resolve_strategies(strategies)
    except ValueError as exc:
        raise MalformedValueError(str(exc)) from exc

    candidate = row_from_payload(donor_fields)
    if not candidate.mapped_values():
        raise ValidationError("Provide at least one donor field to check for duplicates.")

    state = current_app.extensions.get("importer") or {}
    detector = DuplicateDetector.from_config(current_app.config, metrics=state.get("metrics"))
    matches = detector.find_duplicates(candidate, enabled)
    return (
        jsonify(
            {
                "duplicates": [match.to_dict() for match in matches],
                "count": len(matches),
                "strategies": sorted(strategy.value for strategy in enabled),
            }
        ),
        HTTPStatus.OK,
    )

"""
Segment definition API.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from donor_app.exceptions import MalformedValueError, SegmentQueryError
from donor_app.segments import SegmentDefinitionService, SegmentFilters, list_fields
from donor_app.segments.service import Page

from .errors import current_user_id, json_error, register_error_handlers

segments_blueprint = Blueprint("segments", __name__, url_prefix="/api/segments")
register_error_handlers(segments_blueprint)

_PAYLOAD_KEYS = {
    "name": "name",
    "description": "description",
    "filterQuery": "filter_query",
    "filter_query": "filter_query",
    "isAutoUpdated": "is_auto_updated",
    "is_auto_updated": "is_auto_updated",
    "tags": "tags",
}


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise MalformedValueError("Request body must be a JSON object.")
    return payload


def _translate(payload: dict) -> dict:
    changes = {}
    for key, value in payload.items():
        attribute = _PAYLOAD_KEYS.get(key)
        if attribute is None:
            raise MalformedValueError(f"Unsupported segment field: {key}")
        changes[attribute] = value
    return changes


def _page_payload(page: Page, key: str, serialize) -> dict:
    return {
        key: [serialize(item) for item in page.items],
        "pagination": {
            "page": page.page,
            "pageSize": page.page_size,
            "total": page.total,
            "totalPages": page.total_pages,
        },
    }


def _page_args() -> tuple[int | str | None, int | str | None]:
    return request.args.get("page"), request.args.get("pageSize") or request.args.get("page_size")


@segments_blueprint.get("")
def list_segments():
    page, page_size = _page_args()
    filters = SegmentFilters.coerce(
        page=page,
        page_size=page_size,
        search=request.args.get("search"),
        created_by=request.args.get("createdBy"),
        tag=request.args.get("tag"),
        max_page_size=current_app.config.get("SEGMENT_PAGE_SIZE_MAX", 200),
    )
    result = SegmentDefinitionService().list_definitions(filters)
    return jsonify(_page_payload(result, "segments", lambda item: item.to_dict())), HTTPStatus.OK


@segments_blueprint.get("/fields")
def segment_fields():
    return jsonify({"fields": list_fields()}), HTTPStatus.OK


@segments_blueprint.post("")
def create_segment():
    changes = _translate(_json_body())
    if "filter_query" not in changes:
        return json_error("filterQuery is required.", HTTPStatus.BAD_REQUEST)
    definition = SegmentDefinitionService().create_definition(created_by=current_user_id(), **changes)
    return jsonify(definition.to_dict()), HTTPStatus.CREATED


@segments_blueprint.post("/preview")
def preview_segment():
    """Count and sample donors for an unsaved query."""
    payload = _json_body()
    filter_query = payload.get("filterQuery", payload.get("filter_query"))
    if filter_query is None:
        return json_error("filterQuery is required.", HTTPStatus.BAD_REQUEST)
    page, page_size = _page_args()
    result = SegmentDefinitionService().execute_query(filter_query, page=page or 1, page_size=page_size or 10)
    return jsonify(_page_payload(result, "donors", lambda donor: donor.to_dict())), HTTPStatus.OK


@segments_blueprint.post("/validate-query")
def validate_segment_query():
    """Report whether a query compiles; invalid queries still answer 200 with ``valid: false``."""
    payload = _json_body()
    filter_query = payload.get("filterQuery", payload.get("filter_query"))
    if not isinstance(filter_query, dict):
        return json_error("Invalid filter query structure", HTTPStatus.BAD_REQUEST, valid=False)
    try:
        result = SegmentDefinitionService().validate_query(filter_query)
    except SegmentQueryError as exc:
        return jsonify({"valid": False, **exc.to_dict()}), HTTPStatus.OK
    return jsonify({"valid": True, **result}), HTTPStatus.OK


@segments_blueprint.get("/<segment_id>")
def get_segment(segment_id: str):
    return jsonify(SegmentDefinitionService().get_definition(segment_id).to_dict()), HTTPStatus.OK


@segments_blueprint.route("/<segment_id>", methods=["PUT", "PATCH"])
def update_segment(segment_id: str):
    changes = _translate(_json_body())
    definition = SegmentDefinitionService().update_definition(segment_id, **changes)
    return jsonify(definition.to_dict()), HTTPStatus.OK


@segments_blueprint.delete("/<segment_id>")
def delete_segment(segment_id: str):
    SegmentDefinitionService().delete_definition(segment_id)
    return jsonify({"message": "Segment deleted successfully"}), HTTPStatus.OK


@segments_blueprint.post("/<segment_id>/refresh")
def refresh_segment(segment_id: str):
    definition = SegmentDefinitionService().refresh_definition(segment_id, user_id=current_user_id())
    return jsonify(definition.to_dict()), HTTPStatus.OK


@segments_blueprint.get("/<segment_id>/donors")
def segment_donors(segment_id: str):
    page, page_size = _page_args()
    result = SegmentDefinitionService().get_definition_donors(
        segment_id,
        page=page or 1,
        page_size=page_size or current_app.config.get("SEGMENT_PAGE_SIZE_DEFAULT", 25),
    )
    return jsonify(_page_payload(result, "donors", lambda donor: donor.to_dict())), HTTPStatus.OK

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from donor_app.exceptions import MalformedValueError, SegmentNotFoundError, UnknownFieldError
from donor_app.models import AuditLog, DonorType, SegmentDefinition
from donor_app.segments import SegmentDefinitionService, SegmentFilters

SPRINGFIELD = {"combinator": "and", "rules": [{"field": "city", "operator": "equals", "value": "Springfield"}]}
ALUMNI = {"combinator": "and", "rules": [{"field": "donor_type", "operator": "equals", "value": "alumni"}]}
FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service():
    return SegmentDefinitionService(clock=lambda: FIXED_NOW)


def test_create_definition_caches_count_and_sql(service, sample_donors):
    definition = service.create_definition(
        name="  Springfield donors ",
        filter_query=SPRINGFIELD,
        tags=["local"],
        created_by="coordinator",
    )

    assert definition.name == "Springfield donors"
    assert definition.estimated_count == 2
    assert "city" in definition.sql_query
    assert definition.last_calculated is not None
    assert definition.filter_query["rules"][0]["field"] == "city"
    audit = AuditLog.query.filter_by(action="segment_created").one()
    assert audit.entity_id == definition.id
    assert audit.user_id == "coordinator"
    assert audit.metadata_json["estimated_count"] == 2


def test_create_definition_stores_canonical_query(service, sample_donors):
    definition = service.create_definition(name="Alumni", filter_query=ALUMNI)
    assert definition.filter_query == {
        "combinator": "and",
        "rules": [{"field": "donorType", "operator": "equals", "value": "alumni"}],
    }
    assert definition.estimated_count == 2


def test_invalid_definitions_are_not_persisted(service):
    with pytest.raises(MalformedValueError):
        service.create_definition(name="   ", filter_query=SPRINGFIELD)
    with pytest.raises(UnknownFieldError):
        service.create_definition(
            name="Bad", filter_query={"rules": [{"field": "shoeSize", "operator": "equals", "value": 9}]}
        )
    assert SegmentDefinition.query.count() == 0


def test_cached_count_changes_only_on_refresh(service, sample_donors, donor_factory):
    definition = service.create_definition(name="Springfield", filter_query=SPRINGFIELD)
    donor_factory(first_name="Erin", city="Springfield")

    assert service.get_definition(definition.id).estimated_count == 2
    assert service.count_matching(SPRINGFIELD) == 3

    refreshed = service.refresh_definition(definition.id, user_id="ops")
    assert refreshed.estimated_count == 3
    audit = AuditLog.query.filter_by(action="segment_refreshed").one()
    assert audit.metadata_json == {"previous_count": 2, "estimated_count": 3}


def test_update_definition_recalculates_on_query_change(service, sample_donors):
    definition = service.create_definition(name="Springfield", filter_query=SPRINGFIELD)

    service.update_definition(definition.id, name="Alumni", filter_query=ALUMNI, is_auto_updated=True)

    assert definition.name == "Alumni"
    assert definition.is_auto_updated is True
    assert definition.estimated_count == 2
    assert "donor_type" in definition.sql_query

    with pytest.raises(MalformedValueError, match="estimated_count"):
        service.update_definition(definition.id, estimated_count=99)
    with pytest.raises(MalformedValueError):
        service.update_definition(definition.id, name="")
    with pytest.raises(MalformedValueError, match="filterQuery"):
        service.update_definition(definition.id, filter_query=None)
    assert definition.filter_query["rules"][0]["field"] == "donorType"


def test_delete_is_soft(service, sample_donors):
    definition = service.create_definition(name="Springfield", filter_query=SPRINGFIELD)

    service.delete_definition(definition.id)

    with pytest.raises(SegmentNotFoundError):
        service.get_definition(definition.id)
    assert service.get_definition(definition.id, include_inactive=True).is_active is False
    assert service.list_definitions().total == 0
    assert service.list_definitions(SegmentFilters(include_inactive=True)).total == 1


def test_list_definitions_filters_and_paginates(service):
    service.create_definition(name="Spring appeal", filter_query=SPRINGFIELD, tags=["appeal"], created_by="ann")
    service.create_definition(name="Alumni", filter_query=ALUMNI, description="Class notes appeal", created_by="ann")
    service.create_definition(name="Everyone", filter_query={"rules": []}, created_by="ben")

    first = service.list_definitions(SegmentFilters(page=1, page_size=2))
    second = service.list_definitions(SegmentFilters(page=2, page_size=2))
    assert (first.total, first.total_pages, len(first.items), len(second.items)) == (3, 2, 2, 1)
    assert {item.name for item in first.items + second.items} == {"Spring appeal", "Alumni", "Everyone"}

    assert {item.name for item in service.list_definitions(SegmentFilters(search="APPEAL")).items} == {
        "Spring appeal",
        "Alumni",
    }
    assert {item.name for item in service.list_definitions(SegmentFilters(created_by="ben")).items} == {"Everyone"}
    assert [item.name for item in service.list_definitions(SegmentFilters(tag="appeal")).items] == ["Spring appeal"]


def test_filters_coerce_bad_paging_values():
    filters = SegmentFilters.coerce(page="abc", page_size="1000", search="  ", max_page_size=50)
    assert (filters.page, filters.page_size, filters.search) == (1, 50, None)


def test_execute_query_pages_in_name_order(service, sample_donors):
    everyone = {"combinator": "and", "rules": []}

    page = service.execute_query(everyone, page=2, page_size=2)

    assert page.total == 4
    assert page.total_pages == 2
    assert [donor.last_name for donor in page.items] == ["Community", "Parent"]


def test_definition_donors_and_matches(service, sample_donors, donor_factory):
    definition = service.create_definition(name="Alumni", filter_query=ALUMNI)

    page = service.get_definition_donors(definition.id)
    assert {donor.first_name for donor in page.items} == {"Alice", "Bob"}

    alice = sample_donors[0]
    assert service.matches(definition, alice) is True
    assert service.matches(definition, sample_donors[3]) is False
    retired = donor_factory(first_name="Retired", donor_type=DonorType.ALUMNI, is_active=False)
    assert service.matches(definition, retired) is False


def test_refresh_all_respects_auto_flag(service, sample_donors, donor_factory):
    auto = service.create_definition(name="Auto", filter_query=SPRINGFIELD, is_auto_updated=True)
    manual = service.create_definition(name="Manual", filter_query=SPRINGFIELD)
    donor_factory(first_name="Erin", city="Springfield")

    refreshed = service.refresh_all(auto_updated_only=True)

    assert [item.id for item in refreshed] == [auto.id]
    assert auto.estimated_count == 3
    assert manual.estimated_count == 2

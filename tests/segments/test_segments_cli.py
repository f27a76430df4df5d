from __future__ import annotations

from donor_app.models import SegmentDefinition, db
from donor_app.segments import SegmentDefinitionService

SPRINGFIELD = {"combinator": "and", "rules": [{"field": "city", "operator": "equals", "value": "Springfield"}]}


def test_refresh_recalculates_every_active_definition(runner, sample_donors, donor_factory):
    service = SegmentDefinitionService()
    first = service.create_definition(name="Springfield", filter_query=SPRINGFIELD)
    retired = service.create_definition(name="Retired", filter_query=SPRINGFIELD)
    service.delete_definition(retired.id)
    donor_factory(first_name="Erin", city="Springfield")

    result = runner.invoke(args=["segments", "refresh"])

    assert result.exit_code == 0, result.output
    assert "Refreshed 1 segment definition(s)." in result.output
    assert first.id in result.output
    assert db.session.get(SegmentDefinition, first.id).estimated_count == 3
    assert db.session.get(SegmentDefinition, retired.id).estimated_count == 2


def test_refresh_auto_only(runner, sample_donors):
    service = SegmentDefinitionService()
    service.create_definition(name="Manual", filter_query=SPRINGFIELD)
    auto = service.create_definition(name="Auto", filter_query=SPRINGFIELD, is_auto_updated=True)

    result = runner.invoke(args=["segments", "refresh", "--auto-only"])

    assert result.exit_code == 0, result.output
    assert "Refreshed 1 segment definition(s)." in result.output
    assert auto.id in result.output

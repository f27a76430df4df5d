from __future__ import annotations

import pytest

from donor_app.importer.mapping import DonorRow
from donor_app.importer.pipeline.duplicates import (
    Confidence,
    DedupeThresholds,
    DuplicateDetector,
    MatchStrategy,
    exact_email_match,
    format_match_reasons,
    name_address_match,
    resolve_strategies,
)
from donor_app.models import db


@pytest.fixture
def detector(metrics):
    return DuplicateDetector(db.session, metrics=metrics)


def test_exact_email_match_is_high_confidence(detector, donor_factory, metrics):
    existing = donor_factory(first_name="Alice", last_name="Smith", email="Alice@Example.org ")

    matches = detector.find_duplicates(DonorRow(first_name="Zed", last_name="Other", email="alice@example.org"))

    assert len(matches) == 1
    match = matches[0]
    assert match.donor.id == existing.id
    assert match.match_score == 1.0
    assert match.confidence is Confidence.HIGH
    assert match.match_reasons == ["Exact email match"]
    assert match.matched_strategies == ["exact_email"]
    assert metrics.sample("donor_duplicate_matches_total", {"confidence": "high"}) == 1.0


def test_exact_phone_match_ignores_formatting(detector, donor_factory):
    existing = donor_factory(phone="(217) 555-0101")

    matches = detector.find_duplicates(DonorRow(first_name="X", last_name="Y", phone="217.555.0101"))

    assert [match.donor.id for match in matches] == [existing.id]
    assert matches[0].match_reasons == ["Exact phone match"]


def test_only_firing_strategies_contribute_to_the_score(detector, donor_factory):
    existing = donor_factory(first_name="Jon", last_name="Smith", email="jon@example.org", phone="2175550101")

    matches = detector.find_duplicates(
        DonorRow(first_name="Jon", last_name="Smith", email="other@example.org", phone="217-555-0101")
    )

    assert [match.donor.id for match in matches] == [existing.id]
    assert matches[0].match_score == 1.0
    assert matches[0].matched_strategies == ["exact_phone"]


def test_fuzzy_name_match_within_name_pool(detector, donor_factory):
    existing = donor_factory(first_name="Katherine", last_name="Johnson", city="Springfield")

    matches = detector.find_duplicates(DonorRow(first_name="Katharine", last_name="Johnson", city="Springfield"))

    assert [match.donor.id for match in matches] == [existing.id]
    assert "fuzzy_name" in matches[0].matched_strategies
    assert matches[0].confidence in (Confidence.HIGH, Confidence.MEDIUM)


def test_name_pool_folds_non_ascii_case(detector, donor_factory):
    existing = donor_factory(first_name="ÉMILE", last_name="ÇAVUŞ")

    matches = detector.find_duplicates(DonorRow(first_name="émile", last_name="çavuş"))

    assert [match.donor.id for match in matches] == [existing.id]
    assert matches[0].matched_strategies == ["fuzzy_name"]
    assert matches[0].match_score == 1.0


def test_reconfirm_exact_rescores_with_every_strategy(detector, donor_factory):
    existing = donor_factory(
        first_name="Sam",
        last_name="Taylor",
        email="sam@example.org",
        address="12 Oak Street",
        city="Springfield",
        zip_code="62701",
    )
    candidate = DonorRow(
        first_name="Sam",
        last_name="Taylor",
        email="sam@example.org",
        address="12 Oak St",
        city="Springfield",
        zip_code="62701",
    )

    exact_only = detector.find_duplicates(candidate)
    assert exact_only[0].matched_strategies == ["exact_email"]
    assert exact_only[0].match_score == 1.0

    reconfirmed = detector.find_duplicates(candidate, reconfirm_exact=True)

    assert len(reconfirmed) == 1
    match = reconfirmed[0]
    assert match.donor.id == existing.id
    assert match.matched_strategies == ["exact_email", "name_address", "fuzzy_name"]
    # The re-scored result replaces the exact-phase score even though it is lower.
    assert match.match_score < 1.0
    assert match.confidence is Confidence.HIGH


def test_name_address_match_uses_zip_pool(detector, donor_factory):
    existing = donor_factory(first_name="Maria", last_name="Garcia", address="12 Oak Street", zip_code="62701")

    matches = detector.find_duplicates(
        DonorRow(first_name="Maria", last_name="Garcia", address="12 Oak St", zip_code="62701")
    )

    assert matches[0].donor.id == existing.id
    assert "name_address" in matches[0].matched_strategies


def test_inactive_donors_are_never_candidates(detector, donor_factory):
    donor_factory(first_name="Ghost", last_name="Donor", email="ghost@example.org", is_active=False)

    assert detector.find_duplicates(DonorRow(first_name="Ghost", last_name="Donor", email="ghost@example.org")) == []


def test_student_name_strategy_is_opt_in(detector, donor_factory):
    parent = donor_factory(first_name="Pat", last_name="Parent", student_name="Danny Parent")
    candidate = DonorRow(first_name="Chris", last_name="Guardian", student_name="danny parent")

    assert detector.find_duplicates(candidate) == []

    matches = detector.find_duplicates(candidate, ["student_name"])
    assert [match.donor.id for match in matches] == [parent.id]
    assert matches[0].match_reasons == ["Same student name"]


def test_results_are_ranked_and_truncated(donor_factory):
    for index in range(5):
        donor_factory(first_name="Lee", last_name="Chan", email=f"lee{index}@example.org")
    donor_factory(first_name="Lee", last_name="Chan", email="lee@example.org")
    detector = DuplicateDetector(db.session, max_results=3)

    matches = detector.find_duplicates(DonorRow(first_name="Lee", last_name="Chan", email="lee@example.org"))

    assert len(matches) == 3
    scores = [match.match_score for match in matches]
    assert scores == sorted(scores, reverse=True)
    assert matches[0].donor.email == "lee@example.org"


def test_thresholds_bucket_scores():
    thresholds = DedupeThresholds(high=0.9, medium=0.7, low=0.5)
    assert thresholds.bucket(0.95) is Confidence.HIGH
    assert thresholds.bucket(0.9) is Confidence.HIGH
    assert thresholds.bucket(0.75) is Confidence.MEDIUM
    assert thresholds.bucket(0.5) is Confidence.LOW
    assert thresholds.bucket(0.49) is None


def test_from_config_reads_thresholds(app, monkeypatch):
    monkeypatch.setitem(app.config, "DEDUPE_HIGH_THRESHOLD", 0.95)
    monkeypatch.setitem(app.config, "DEDUPE_MAX_RESULTS", 4)
    detector = DuplicateDetector.from_config(app.config)
    assert detector.thresholds.high == 0.95
    assert detector.max_results == 4


def test_resolve_strategies_rejects_unknown_names():
    assert resolve_strategies(None) == frozenset(
        {
            MatchStrategy.EXACT_EMAIL,
            MatchStrategy.EXACT_PHONE,
            MatchStrategy.NAME_ADDRESS,
            MatchStrategy.FUZZY_NAME,
        }
    )
    with pytest.raises(ValueError):
        resolve_strategies(["telepathy"])


def test_strategy_functions_skip_missing_values():
    assert not exact_email_match(DonorRow(email=None), DonorRow(email="a@example.org")).fired
    assert not name_address_match(DonorRow(first_name="A", last_name="B"), DonorRow(first_name="Q", last_name="R")).fired


def test_format_match_reasons_deduplicates():
    assert format_match_reasons(["Exact email match", "Exact email match", ""]) == "Exact email match"
    assert format_match_reasons([]) == "Similar record"

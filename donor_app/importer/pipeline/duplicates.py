"""
Tiered duplicate detection for donor candidates.

Phases run cheapest first:

1. exact lookups on the indexed normalized email / phone columns,
2. a bounded name-based candidate pool scored with name and address similarity,
3. a student-name lookup linking parents to current students.

Each strategy that fires contributes ``score * weight``; the final score is
the weighted mean. Matches below the low threshold are dropped and the rest
are ranked and truncated.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from donor_app.models import Donor, db
from donor_app.utils.normalize import clean_text, normalize_email, normalize_phone

from .similarity import address_similarity, name_similarity, string_similarity

if TYPE_CHECKING:
    from donor_app.importer.metrics import ImporterMetrics

logger = logging.getLogger(__name__)


class MatchStrategy(str, enum.Enum):
    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    NAME_ADDRESS = "name_address"
    FUZZY_NAME = "fuzzy_name"
    STUDENT_NAME = "student_name"


EXACT_STRATEGIES = frozenset({MatchStrategy.EXACT_EMAIL, MatchStrategy.EXACT_PHONE})
NAME_STRATEGIES = frozenset({MatchStrategy.NAME_ADDRESS, MatchStrategy.FUZZY_NAME})
DEFAULT_STRATEGIES: tuple[MatchStrategy, ...] = (
    MatchStrategy.EXACT_EMAIL,
    MatchStrategy.EXACT_PHONE,
    MatchStrategy.NAME_ADDRESS,
    MatchStrategy.FUZZY_NAME,
)

EMAIL_WEIGHT = 3.0
PHONE_WEIGHT = 2.5
NAME_ADDRESS_WEIGHT = 2.0
FUZZY_NAME_WEIGHT = 1.5
STUDENT_NAME_WEIGHT = 2.0

NAME_ADDRESS_MIN_NAME = 0.8
NAME_ADDRESS_MIN_ADDRESS = 0.7
NAME_ADDRESS_NAME_SHARE = 0.6
NAME_ADDRESS_ADDRESS_SHARE = 0.4
FUZZY_NAME_MIN = 0.8
STUDENT_NAME_MIN = 0.9
CITY_PREFIX_LENGTH = 3


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class DedupeThresholds:
    high: float = 0.9
    medium: float = 0.7
    low: float = 0.5

    def bucket(self, score: float) -> Confidence | None:
        if score >= self.high:
            return Confidence.HIGH
        if score >= self.medium:
            return Confidence.MEDIUM
        if score >= self.low:
            return Confidence.LOW
        return None


@dataclass(frozen=True)
class StrategyResult:
    score: float
    weight: float
    reasons: tuple[str, ...] = ()

    @property
    def fired(self) -> bool:
        return self.score > 0


_NO_MATCH = StrategyResult(score=0.0, weight=0.0)


@dataclass
class DuplicateMatch:
    """A stored donor likely to be the same person as the candidate."""

    donor: Donor
    match_score: float
    match_reasons: list[str] = field(default_factory=list)
    matched_strategies: list[str] = field(default_factory=list)
    confidence: Confidence = Confidence.LOW

    def to_dict(self) -> dict[str, Any]:
        return {
            "donorId": self.donor.id,
            "donor": self.donor.to_dict(),
            "matchScore": round(self.match_score, 4),
            "matchReasons": list(self.match_reasons),
            "matchedStrategies": list(self.matched_strategies),
            "confidence": self.confidence.value,
        }

    def summary(self) -> dict[str, Any]:
        """Compact form stored in import warnings."""
        return {
            "donorId": self.donor.id,
            "name": self.donor.full_name,
            "matchScore": round(self.match_score, 4),
            "confidence": self.confidence.value,
            "reasons": list(self.match_reasons),
        }


def resolve_strategies(strategies: Iterable[str | MatchStrategy] | None) -> frozenset[MatchStrategy]:
    """Coerce strategy names, rejecting unknown values."""
    if strategies is None:
        return frozenset(DEFAULT_STRATEGIES)
    resolved = set()
    for value in strategies:
        try:
            resolved.add(MatchStrategy(value))
        except ValueError as exc:
            raise ValueError(f"Unknown duplicate strategy '{value}'.") from exc
    return frozenset(resolved)


def format_match_reasons(reasons: Iterable[str]) -> str:
    unique = list(dict.fromkeys(reason for reason in reasons if reason))
    return ", ".join(unique) if unique else "Similar record"


# ---------------------------------------------------------------------------
# Individual strategies
# ---------------------------------------------------------------------------


def exact_email_match(candidate: Any, donor: Any) -> StrategyResult:
    left = normalize_email(getattr(candidate, "email", None))
    right = normalize_email(getattr(donor, "email", None))
    if not left or not right:
        return _NO_MATCH
    if left != right:
        return StrategyResult(score=0.0, weight=EMAIL_WEIGHT)
    return StrategyResult(score=1.0, weight=EMAIL_WEIGHT, reasons=("Exact email match",))


def exact_phone_match(candidate: Any, donor: Any) -> StrategyResult:
    left = normalize_phone(getattr(candidate, "phone", None))
    right = normalize_phone(getattr(donor, "phone", None))
    if not left or not right:
        return _NO_MATCH
    if left != right:
        return StrategyResult(score=0.0, weight=PHONE_WEIGHT)
    return StrategyResult(score=1.0, weight=PHONE_WEIGHT, reasons=("Exact phone match",))


def name_address_match(candidate: Any, donor: Any) -> StrategyResult:
    name_score = name_similarity(candidate, donor)
    address_score = address_similarity(candidate, donor)
    if name_score < NAME_ADDRESS_MIN_NAME or address_score < NAME_ADDRESS_MIN_ADDRESS:
        return _NO_MATCH
    reasons = []
    if name_score > 0.9:
        reasons.append("Very similar name")
    if address_score > 0.9:
        reasons.append("Very similar address")
    combined = name_score * NAME_ADDRESS_NAME_SHARE + address_score * NAME_ADDRESS_ADDRESS_SHARE
    return StrategyResult(score=combined, weight=NAME_ADDRESS_WEIGHT, reasons=tuple(reasons))


def fuzzy_name_match(candidate: Any, donor: Any) -> StrategyResult:
    similarity = name_similarity(candidate, donor)
    if similarity < FUZZY_NAME_MIN:
        return _NO_MATCH
    if similarity > 0.95:
        reasons: tuple[str, ...] = ("Very similar full name",)
    elif similarity > 0.9:
        reasons = ("Similar full name",)
    else:
        reasons = ()
    return StrategyResult(score=similarity, weight=FUZZY_NAME_WEIGHT, reasons=reasons)


def student_name_match(candidate: Any, donor: Any) -> StrategyResult:
    left = clean_text(getattr(candidate, "student_name", None)).lower()
    right = clean_text(getattr(donor, "student_name", None)).lower()
    if not left or not right:
        return _NO_MATCH
    similarity = string_similarity(left, right)
    if similarity < STUDENT_NAME_MIN:
        return _NO_MATCH
    return StrategyResult(score=similarity, weight=STUDENT_NAME_WEIGHT, reasons=("Same student name",))


STRATEGY_FUNCTIONS = {
    MatchStrategy.EXACT_EMAIL: exact_email_match,
    MatchStrategy.EXACT_PHONE: exact_phone_match,
    MatchStrategy.NAME_ADDRESS: name_address_match,
    MatchStrategy.FUZZY_NAME: fuzzy_name_match,
    MatchStrategy.STUDENT_NAME: student_name_match,
}


class DuplicateDetector:
    """Find stored donors that likely represent the same person as a candidate."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        thresholds: DedupeThresholds | None = None,
        name_pool_limit: int = 50,
        city_pool_limit: int = 20,
        student_pool_limit: int = 10,
        max_results: int = 10,
        metrics: "ImporterMetrics | None" = None,
    ) -> None:
        self.session: Session = session or db.session
        self.thresholds = thresholds or DedupeThresholds()
        self.name_pool_limit = name_pool_limit
        self.city_pool_limit = city_pool_limit
        self.student_pool_limit = student_pool_limit
        self.max_results = max_results
        self.metrics = metrics

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        session: Session | None = None,
        metrics: "ImporterMetrics | None" = None,
    ) -> "DuplicateDetector":
        return cls(
            session,
            thresholds=DedupeThresholds(
                high=float(config.get("DEDUPE_HIGH_THRESHOLD", 0.9)),
                medium=float(config.get("DEDUPE_MEDIUM_THRESHOLD", 0.7)),
                low=float(config.get("DEDUPE_LOW_THRESHOLD", 0.5)),
            ),
            name_pool_limit=int(config.get("DEDUPE_NAME_POOL_LIMIT", 50)),
            city_pool_limit=int(config.get("DEDUPE_CITY_POOL_LIMIT", 20)),
            student_pool_limit=int(config.get("DEDUPE_STUDENT_POOL_LIMIT", 10)),
            max_results=int(config.get("DEDUPE_MAX_RESULTS", 10)),
            metrics=metrics,
        )

    def find_duplicates(
        self,
        candidate: Any,
        strategies: Iterable[str | MatchStrategy] | None = None,
        *,
        reconfirm_exact: bool = False,
    ) -> list[DuplicateMatch]:
        """
        Return ranked duplicate matches for ``candidate``.

        ``candidate`` is any object exposing donor attribute names
        (``first_name``, ``email``, ``zip_code`` ...). With ``reconfirm_exact``
        donors found in the exact phase are re-scored with every enabled
        strategy during the name phase instead of being skipped.
        """
        enabled = resolve_strategies(strategies)
        matches: dict[str, DuplicateMatch] = {}

        exact_ids: set[str] = set()
        exact_enabled = enabled & EXACT_STRATEGIES
        if exact_enabled:
            for donor in self._exact_pool(candidate, exact_enabled):
                exact_ids.add(donor.id)
                self._keep(matches, self.score(candidate, donor, exact_enabled))

        if enabled & NAME_STRATEGIES:
            name_phase = enabled - EXACT_STRATEGIES
            for donor in self._name_pool(candidate):
                if donor.id in exact_ids:
                    if not reconfirm_exact:
                        continue
                    self._keep(matches, self.score(candidate, donor, enabled), replace=True)
                    continue
                self._keep(matches, self.score(candidate, donor, name_phase))

        if MatchStrategy.STUDENT_NAME in enabled and clean_text(getattr(candidate, "student_name", None)):
            for donor in self._student_pool(candidate):
                if donor.id in matches:
                    continue
                self._keep(matches, self.score(candidate, donor, {MatchStrategy.STUDENT_NAME}))

        ranked = sorted(matches.values(), key=lambda match: match.match_score, reverse=True)[: self.max_results]
        if self.metrics is not None:
            for match in ranked:
                self.metrics.record_duplicate_match(match.confidence.value)
        return ranked

    def score(self, candidate: Any, donor: Donor, strategies: Iterable[MatchStrategy]) -> DuplicateMatch | None:
        """Weighted score of ``donor`` against ``candidate``; ``None`` below the low threshold."""
        total_score = 0.0
        total_weight = 0.0
        reasons: list[str] = []
        fired: list[str] = []
        for strategy in MatchStrategy:
            if strategy not in strategies:
                continue
            result = STRATEGY_FUNCTIONS[strategy](candidate, donor)
            if not result.fired:
                continue
            total_score += result.score * result.weight
            total_weight += result.weight
            reasons.extend(result.reasons)
            fired.append(strategy.value)

        final_score = total_score / total_weight if total_weight else 0.0
        confidence = self.thresholds.bucket(final_score)
        if confidence is None:
            return None
        return DuplicateMatch(
            donor=donor,
            match_score=final_score,
            match_reasons=reasons,
            matched_strategies=fired,
            confidence=confidence,
        )

    @staticmethod
    def _keep(matches: dict[str, DuplicateMatch], match: DuplicateMatch | None, *, replace: bool = False) -> None:
        if match is None:
            return
        existing = matches.get(match.donor.id)
        if existing is None or replace or match.match_score > existing.match_score:
            matches[match.donor.id] = match

    # ------------------------------------------------------------------
    # Candidate pools
    # ------------------------------------------------------------------

    def _active(self):
        return self.session.query(Donor).filter(Donor.is_active.is_(True))

    def _exact_pool(self, candidate: Any, strategies: frozenset[MatchStrategy]) -> list[Donor]:
        conditions = []
        email = normalize_email(getattr(candidate, "email", None))
        if email and MatchStrategy.EXACT_EMAIL in strategies:
            conditions.append(Donor.email_normalized == email)
        phone = normalize_phone(getattr(candidate, "phone", None))
        if phone and MatchStrategy.EXACT_PHONE in strategies:
            conditions.append(Donor.phone_digits == phone)
        if not conditions:
            return []
        return self._active().filter(or_(*conditions)).all()

    def _name_pool(self, candidate: Any) -> list[Donor]:
        first = clean_text(getattr(candidate, "first_name", None)).lower()
        last = clean_text(getattr(candidate, "last_name", None)).lower()
        if not first or not last:
            return []

        first_col = func.lower(Donor.first_name)
        last_col = func.lower(Donor.last_name)
        pool: dict[str, Donor] = {}

        def _collect(rows: Iterable[Donor]) -> None:
            for donor in rows:
                if len(pool) >= self.name_pool_limit:
                    return
                pool.setdefault(donor.id, donor)

        _collect(
            self._active()
            .filter(first_col == first, last_col == last)
            .limit(self.name_pool_limit)
            .all()
        )

        zip_code = clean_text(getattr(candidate, "zip_code", None))
        if zip_code and len(pool) < self.name_pool_limit:
            _collect(
                self._active()
                .filter(
                    Donor.zip_code == zip_code,
                    or_(
                        and_(first_col == first, last_col.contains(last, autoescape=True)),
                        and_(first_col.contains(first, autoescape=True), last_col == last),
                    ),
                )
                .limit(self.name_pool_limit)
                .all()
            )

        city = clean_text(getattr(candidate, "city", None)).lower()
        if city and len(pool) < self.name_pool_limit:
            _collect(
                self._active()
                .filter(
                    func.lower(Donor.city) == city,
                    or_(
                        first_col.startswith(first[:CITY_PREFIX_LENGTH], autoescape=True),
                        last_col.startswith(last[:CITY_PREFIX_LENGTH], autoescape=True),
                    ),
                )
                .order_by(Donor.last_name, Donor.first_name)
                .limit(self.city_pool_limit)
                .all()
            )
        return list(pool.values())

    def _student_pool(self, candidate: Any) -> list[Donor]:
        student = clean_text(getattr(candidate, "student_name", None)).lower()
        return (
            self._active()
            .filter(func.lower(Donor.student_name) == student)
            .limit(self.student_pool_limit)
            .all()
        )


__all__ = [
    "MatchStrategy",
    "Confidence",
    "DedupeThresholds",
    "DuplicateMatch",
    "DuplicateDetector",
    "DEFAULT_STRATEGIES",
    "resolve_strategies",
    "format_match_reasons",
    "exact_email_match",
    "exact_phone_match",
    "name_address_match",
    "fuzzy_name_match",
    "student_name_match",
]

"""
Attribute-level similarity between a vehicle and a conceptual mapping.

Numeric less/greater comparisons are banded around the target:

    less:    <= 0.7t -> 1.0   <= t -> 0.8   <= 1.3t -> 0.5   else 0.2
    greater: >= 1.3t -> 1.0   >= t -> 0.8   >= 0.7t -> 0.5   else 0.2

Everything else is binary. The same attribute accessor and comparison
logic back the business-rule predicates used by re-ranking.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic.alias_generators import to_camel

from config.constants import DEFAULT_SIMILARITY_CONFIG, SimilarityConfig
from core.logging import get_logger
from core.utils import clamp, ensure_utc, utc_now
from search.models import (
    AttributeWeight,
    ComparisonType,
    ConceptualMapping,
    ConstraintOperator,
    SearchConstraint,
    SimilarityScore,
    Vehicle,
)

logger = get_logger(__name__)


# Folded attribute name ("motExpiryDate", "mot_expiry_date" -> "motexpirydate") -> Vehicle field
_ATTRIBUTE_FIELDS: Dict[str, str] = {
    to_camel(name).lower(): name for name in Vehicle.model_fields
}

_DAYS_UNTIL_FIELDS = {"mot_expiry_date"}


def attribute_value(vehicle: Vehicle, attribute: str, now: Optional[datetime] = None) -> Any:
    """
    Read a named attribute off a vehicle.

    motExpiryDate is returned as days until expiry (negative once expired).
    Missing values and empty strings come back as None.
    """
    field_name = _ATTRIBUTE_FIELDS.get(attribute.replace("_", "").lower())
    if field_name is None:
        logger.debug("Unknown vehicle attribute", attribute=attribute)
        return None

    value = getattr(vehicle, field_name)
    if field_name in _DAYS_UNTIL_FIELDS:
        if value is None:
            return None
        today = (now or utc_now()).date()
        return (ensure_utc(value).date() - today).days
    if value == "" or value is None:
        return None
    return value


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _orderable(value: Any) -> Any:
    """Float or UTC datetime for ordering comparisons; None when neither."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    number = _as_float(value)
    if number is not None or not isinstance(value, str):
        return number
    try:
        return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _text(value: Any) -> str:
    return str(value).strip().lower()


def _equals(actual: Any, target: Any) -> bool:
    if isinstance(actual, bool) or isinstance(target, bool):
        if isinstance(actual, bool) and isinstance(target, bool):
            return actual == target
        return _text(actual) == _text(target)

    a, t = _as_float(actual), _as_float(target)
    if a is not None and t is not None:
        return a == t
    return _text(actual) == _text(target)


def _contains_any(actual: Any, targets: Iterable[Any]) -> bool:
    haystacks = [_text(item) for item in _as_list(actual) if item is not None]
    needles = [_text(t) for t in targets if t is not None and _text(t)]
    return any(needle in hay for hay in haystacks for needle in needles)


def compare(actual: Any, comparison: ComparisonType, target: Any) -> bool:
    """Boolean predicate: does ``actual`` satisfy ``comparison`` against ``target``."""
    if actual is None or target is None:
        return False

    if comparison in (ComparisonType.LESS, ComparisonType.GREATER,
                      ComparisonType.LESS_OR_EQUAL, ComparisonType.GREATER_OR_EQUAL):
        a, t = _orderable(actual), _orderable(target)
        if a is None or t is None or isinstance(a, datetime) != isinstance(t, datetime):
            return False
        if comparison == ComparisonType.LESS:
            return a < t
        if comparison == ComparisonType.GREATER:
            return a > t
        if comparison == ComparisonType.LESS_OR_EQUAL:
            return a <= t
        return a >= t

    if comparison == ComparisonType.EQUALS:
        return _equals(actual, target)
    if comparison == ComparisonType.IN:
        return any(_equals(actual, t) for t in _as_list(target))
    if comparison == ComparisonType.CONTAINS:
        return _contains_any(actual, [target])
    if comparison == ComparisonType.CONTAINS_ANY:
        return _contains_any(actual, _as_list(target))
    return False


_CONSTRAINT_COMPARISONS = {
    ConstraintOperator.EQUALS: ComparisonType.EQUALS,
    ConstraintOperator.GREATER_THAN: ComparisonType.GREATER,
    ConstraintOperator.GREATER_THAN_OR_EQUAL: ComparisonType.GREATER_OR_EQUAL,
    ConstraintOperator.LESS_THAN: ComparisonType.LESS,
    ConstraintOperator.LESS_THAN_OR_EQUAL: ComparisonType.LESS_OR_EQUAL,
    ConstraintOperator.IN: ComparisonType.IN,
}


def constraint_matches(vehicle: Vehicle, constraint: SearchConstraint, now: Optional[datetime] = None) -> bool:
    """Evaluate one search constraint against a vehicle document."""
    actual = attribute_value(vehicle, constraint.field_name, now)
    op = constraint.operator
    value = constraint.value

    if op in _CONSTRAINT_COMPARISONS:
        return compare(actual, _CONSTRAINT_COMPARISONS[op], value)
    if op == ConstraintOperator.NOT_EQUALS:
        return actual is not None and not compare(actual, ComparisonType.EQUALS, value)
    if op == ConstraintOperator.BETWEEN:
        low, high = value
        return (compare(actual, ComparisonType.GREATER_OR_EQUAL, low)
                and compare(actual, ComparisonType.LESS_OR_EQUAL, high))
    if op == ConstraintOperator.CONTAINS:
        return compare(actual, ComparisonType.CONTAINS_ANY, value)
    return False


class SimilarityScorer:
    """Scores vehicles against conceptual mappings."""

    def __init__(self, config: SimilarityConfig = DEFAULT_SIMILARITY_CONFIG):
        self._config = config

    def compute_score(
        self,
        vehicle: Vehicle,
        mapping: ConceptualMapping,
        now: Optional[datetime] = None,
    ) -> SimilarityScore:
        cfg = self._config
        component_scores: Dict[str, float] = {}
        matching: List[str] = []
        mismatching: List[str] = []
        weighted = 0.0

        for aw in mapping.attribute_weights:
            score = self.attribute_score(vehicle, aw, now)
            component_scores[aw.attribute] = score
            if score >= cfg.MATCHING_THRESHOLD:
                matching.append(aw.attribute)
            elif score < cfg.MISMATCHING_THRESHOLD:
                mismatching.append(aw.attribute)
            weighted += score * aw.weight

        boost = self.description_boost(vehicle.description, mapping)
        overall = clamp(weighted + boost)

        logger.debug(
            "Computed concept similarity",
            vehicle_id=vehicle.id,
            concept=mapping.concept,
            base=round(weighted, 3),
            boost=round(boost, 3),
            overall=round(overall, 3),
        )
        return SimilarityScore(
            overall_score=overall,
            component_scores=component_scores,
            matching_attributes=matching,
            mismatching_attributes=mismatching,
        )

    def attribute_score(self, vehicle: Vehicle, aw: AttributeWeight, now: Optional[datetime] = None) -> float:
        actual = attribute_value(vehicle, aw.attribute, now)
        if actual is None:
            return 0.0

        comparison = aw.comparison_type
        if comparison == ComparisonType.LESS:
            return self._banded(actual, aw.target_value, lower_is_better=True)
        if comparison == ComparisonType.GREATER:
            return self._banded(actual, aw.target_value, lower_is_better=False)
        if comparison in (ComparisonType.LESS_OR_EQUAL, ComparisonType.GREATER_OR_EQUAL):
            if _as_float(actual) is None or _as_float(aw.target_value) is None:
                return 0.0
            return self._config.STRONG_SCORE if compare(actual, comparison, aw.target_value) else self._config.FAR_SCORE
        return 1.0 if compare(actual, comparison, aw.target_value) else 0.0

    def _banded(self, actual: Any, target: Any, lower_is_better: bool) -> float:
        cfg = self._config
        a, t = _as_float(actual), _as_float(target)
        if a is None or t is None:
            return 0.0

        if lower_is_better:
            if a <= t * cfg.STRONG_BAND:
                return cfg.STRONG_SCORE
            if a <= t:
                return cfg.WITHIN_SCORE
            if a <= t * cfg.NEAR_BAND:
                return cfg.NEAR_SCORE
            return cfg.FAR_SCORE

        if a >= t * cfg.NEAR_BAND:
            return cfg.STRONG_SCORE
        if a >= t:
            return cfg.WITHIN_SCORE
        if a >= t * cfg.STRONG_BAND:
            return cfg.NEAR_SCORE
        return cfg.FAR_SCORE

    def description_boost(self, description: str, mapping: ConceptualMapping) -> float:
        """+0.05 per positive indicator, -0.10 per negative, bounded to +/-0.5."""
        if not description or not description.strip():
            return 0.0

        cfg = self._config
        text = description.lower()
        boost = 0.0
        for indicator in mapping.positive_indicators:
            if indicator.lower() in text:
                boost += cfg.POSITIVE_INDICATOR_BOOST
        for indicator in mapping.negative_indicators:
            if indicator.lower() in text:
                boost -= cfg.NEGATIVE_INDICATOR_PENALTY
        return clamp(boost, -cfg.MAX_DESCRIPTION_BOOST, cfg.MAX_DESCRIPTION_BOOST)

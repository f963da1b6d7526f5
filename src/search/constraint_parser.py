"""
Operator inference and constraint parsing.

Turns one extracted entity plus the surrounding query text into typed
SearchConstraints:

- Make / Location / FuelType / Transmission / BodyType / Colour -> Exact Equals
- Model / Derivative / Feature -> Exact Contains
- Price / Mileage / EngineSize -> Range, operator inferred from context,
  "around X" becomes Between[X*(1-band), X*(1+band)]
- PriceRange "A-B" -> Range Between[A, B]
- Year -> calendar-year range, or an open bound with "or newer" style context
- QualitativeTerm -> configured defaults, typed Semantic

Unparseable values never raise out of parse_entity(): the entity is
dropped with a warning log and an empty list is returned.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from config.constants import (
    APPROXIMATE_KEYWORDS,
    DEFAULT_QUALITATIVE_TERMS,
    ENTITY_FIELD_MAP,
    MAX_YEAR,
    MIN_YEAR,
    OPERATOR_KEYWORDS,
    YEAR_AFTER_KEYWORDS,
    YEAR_BEFORE_KEYWORDS,
    YEAR_FROM_KEYWORDS,
    YEAR_UNTIL_KEYWORDS,
)
from core.exceptions import ConfigurationError, ValidationError
from core.logging import get_logger
from core.utils import parse_number
from search.models import (
    ConstraintOperator,
    ConstraintType,
    EntityType,
    ExtractedEntity,
    SearchConstraint,
)

logger = get_logger(__name__)


_RANGE_SEPARATOR = re.compile(r"\s*(?:-|\bto\b)\s*")


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def parse_operator(name: str) -> ConstraintOperator:
    """
    Parse an operator name in any common spelling.

    Accepts "less_than_or_equal", "LessThanOrEqual", "lessthanorequal".
    """
    key = name.replace("_", "").replace(" ", "").lower()
    for op in ConstraintOperator:
        if op.value.replace("_", "") == key:
            return op
    raise ValueError(f"Unknown operator: {name!r}")


# =============================================================================
# Operator Inference
# =============================================================================

class OperatorInference:
    """Maps contextual keywords ("under", "around", ...) to an operator."""

    def __init__(self, keyword_table=OPERATOR_KEYWORDS):
        self._table = [
            (keywords, ConstraintOperator(op_name))
            for keywords, op_name in keyword_table
        ]

    def infer_operator(
        self,
        context: Optional[str],
        default: ConstraintOperator = ConstraintOperator.EQUALS,
    ) -> ConstraintOperator:
        """First matching keyword group wins; no match returns the default."""
        if not context or not context.strip():
            return default

        text = context.lower()
        for keywords, op in self._table:
            for keyword in keywords:
                if keyword in text:
                    logger.debug("Inferred operator", keyword=keyword, operator=op.value)
                    return op
        return default

    def is_approximate(self, context: Optional[str]) -> bool:
        if not context:
            return False
        return _contains_any(context.lower(), APPROXIMATE_KEYWORDS)


# =============================================================================
# Qualitative Terms
# =============================================================================

def build_qualitative_terms(
    raw: Mapping[str, Sequence[Mapping[str, Any]]],
) -> Dict[str, tuple]:
    """
    Validate qualitative-term definitions into immutable constraint tuples.

    Raises:
        ConfigurationError: If a definition is malformed.
    """
    terms: Dict[str, tuple] = {}
    for term, definitions in raw.items():
        key = term.strip().lower()
        constraints = []
        for definition in definitions:
            try:
                constraints.append(SearchConstraint(
                    field_name=definition.get("field_name") or definition["fieldName"],
                    operator=parse_operator(definition["operator"]),
                    value=definition.get("value"),
                    type=ConstraintType.SEMANTIC,
                    source_term=key,
                ))
            except (KeyError, ValueError) as e:
                raise ConfigurationError(f"Invalid qualitative term '{term}': {e}") from e
        terms[key] = tuple(constraints)
    return terms


def load_qualitative_terms(path: Optional[Path] = None) -> Dict[str, tuple]:
    """Load term definitions from a JSON file, or the built-in defaults."""
    if path is None:
        return build_qualitative_terms(DEFAULT_QUALITATIVE_TERMS)

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read qualitative terms from {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Qualitative terms file {path} must contain a JSON object")

    logger.info("Loaded qualitative terms", path=str(path), terms=len(raw))
    return build_qualitative_terms(raw)


# =============================================================================
# Constraint Parser
# =============================================================================

class ConstraintParser:
    """Converts an ExtractedEntity + context text into SearchConstraints."""

    def __init__(
        self,
        operator_inference: Optional[OperatorInference] = None,
        qualitative_terms: Optional[Mapping[str, Sequence[SearchConstraint]]] = None,
        approximate_band: float = 0.10,
    ):
        if not 0.0 < approximate_band < 1.0:
            raise ConfigurationError(f"approximate_band must be in (0, 1), got {approximate_band}")

        self._inference = operator_inference or OperatorInference()
        if qualitative_terms is None:
            qualitative_terms = load_qualitative_terms()
        self._terms = {k.lower(): tuple(v) for k, v in qualitative_terms.items()}
        self._band = approximate_band

        self._handlers: Dict[EntityType, Callable[[ExtractedEntity, str], List[SearchConstraint]]] = {
            EntityType.MAKE: self._parse_exact,
            EntityType.LOCATION: self._parse_exact,
            EntityType.FUEL_TYPE: self._parse_exact,
            EntityType.TRANSMISSION: self._parse_exact,
            EntityType.BODY_TYPE: self._parse_exact,
            EntityType.COLOUR: self._parse_exact,
            EntityType.MODEL: self._parse_contains,
            EntityType.DERIVATIVE: self._parse_contains,
            EntityType.FEATURE: self._parse_contains,
            EntityType.PRICE: self._parse_price,
            EntityType.PRICE_RANGE: self._parse_price_range,
            EntityType.MILEAGE: self._parse_mileage,
            EntityType.ENGINE_SIZE: self._parse_engine_size,
            EntityType.YEAR: self._parse_year,
            EntityType.QUALITATIVE_TERM: self._parse_qualitative_term,
        }

    @property
    def known_terms(self) -> List[str]:
        return sorted(self._terms)

    def parse_entity(self, entity: ExtractedEntity, context: str = "") -> List[SearchConstraint]:
        """
        Parse one entity into zero or more constraints.

        An empty list means "not translatable"; the caller records the
        entity as unmappable and carries on.
        """
        handler = self._handlers.get(entity.type)
        if handler is None:
            logger.warning("No constraint mapping for entity type", entity_type=entity.type.value)
            return []

        try:
            return handler(entity, context or "")
        except (ValueError, OverflowError) as e:
            logger.warning(
                "Dropping unparseable entity",
                entity_type=entity.type.value,
                value=entity.value,
                error=str(e),
            )
            return []

    def parse_constraint(self, entity: ExtractedEntity, context: str = "") -> Optional[SearchConstraint]:
        """First constraint for the entity, or None."""
        constraints = self.parse_entity(entity, context)
        return constraints[0] if constraints else None

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _field(self, entity: ExtractedEntity) -> str:
        return ENTITY_FIELD_MAP[entity.type.value]

    def _parse_exact(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        value = entity.value.strip()
        if not value:
            raise ValidationError("Empty value", field=self._field(entity))
        return [SearchConstraint(
            field_name=self._field(entity),
            operator=ConstraintOperator.EQUALS,
            value=value,
            type=ConstraintType.EXACT,
        )]

    def _parse_contains(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        value = entity.value.strip()
        if not value:
            raise ValidationError("Empty value", field=self._field(entity))
        return [SearchConstraint(
            field_name=self._field(entity),
            operator=ConstraintOperator.CONTAINS,
            value=value,
            type=ConstraintType.EXACT,
        )]

    def _numeric(self, entity: ExtractedEntity) -> float:
        try:
            return parse_number(entity.value)
        except ValueError as e:
            raise ValidationError(f"Non-numeric {entity.type.value}: {entity.value!r}",
                                  field=self._field(entity)) from e

    def _numeric_constraint(
        self,
        field_name: str,
        value: float,
        context: str,
        as_int: bool = False,
    ) -> SearchConstraint:
        op = self._inference.infer_operator(context)

        # A single value can't carry an explicit range: "around"/"between"
        # on a scalar becomes the approximate band.
        if op == ConstraintOperator.BETWEEN or self._inference.is_approximate(context):
            low, high = value * (1 - self._band), value * (1 + self._band)
            band = [int(round(low)), int(round(high))] if as_int else [round(low, 2), round(high, 2)]
            return SearchConstraint(
                field_name=field_name,
                operator=ConstraintOperator.BETWEEN,
                value=band,
                type=ConstraintType.RANGE,
            )

        return SearchConstraint(
            field_name=field_name,
            operator=op,
            value=int(value) if as_int else value,
            type=ConstraintType.RANGE,
        )

    def _parse_price(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        value = self._numeric(entity)
        if value < 0:
            raise ValidationError(f"Negative price: {value}", field="price")
        return [self._numeric_constraint("price", value, context)]

    def _parse_mileage(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        value = self._numeric(entity)
        if value < 0:
            raise ValidationError(f"Negative mileage: {value}", field="mileage")
        return [self._numeric_constraint("mileage", value, context, as_int=True)]

    def _parse_engine_size(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        value = self._numeric(entity)
        if value < 0:
            raise ValidationError(f"Negative engine size: {value}", field="engineSize")
        return [self._numeric_constraint("engineSize", value, context)]

    def _parse_price_range(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        text = entity.value.strip()
        parts = [p for p in _RANGE_SEPARATOR.split(text) if p]
        if len(parts) == 1:
            parts = [p for p in text.split(",") if p.strip()]
        if len(parts) != 2:
            raise ValidationError(f"Price range needs two values: {entity.value!r}", field="price")
        try:
            low, high = sorted(parse_number(p) for p in parts)
        except ValueError as e:
            raise ValidationError(f"Non-numeric price range: {entity.value!r}", field="price") from e

        return [SearchConstraint(
            field_name="price",
            operator=ConstraintOperator.BETWEEN,
            value=[low, high],
            type=ConstraintType.RANGE,
        )]

    def _parse_year(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        try:
            year = int(parse_number(entity.value))
        except ValueError as e:
            raise ValidationError(f"Non-numeric year: {entity.value!r}", field="registrationDate") from e
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValidationError(f"Year out of range: {year}", field="registrationDate")

        start = datetime(year, 1, 1, tzinfo=timezone.utc)
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) - timedelta(seconds=1)
        text = context.lower()

        if _contains_any(text, YEAR_FROM_KEYWORDS):
            op, value = ConstraintOperator.GREATER_THAN_OR_EQUAL, start
        elif _contains_any(text, YEAR_AFTER_KEYWORDS):
            op, value = ConstraintOperator.GREATER_THAN_OR_EQUAL, datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        elif _contains_any(text, YEAR_UNTIL_KEYWORDS):
            op, value = ConstraintOperator.LESS_THAN_OR_EQUAL, end
        elif _contains_any(text, YEAR_BEFORE_KEYWORDS):
            op, value = ConstraintOperator.LESS_THAN, start
        else:
            op, value = ConstraintOperator.BETWEEN, [start, end]

        return [SearchConstraint(
            field_name="registrationDate",
            operator=op,
            value=value,
            type=ConstraintType.RANGE,
        )]

    def _parse_qualitative_term(self, entity: ExtractedEntity, context: str) -> List[SearchConstraint]:
        term = entity.value.strip().lower()
        defaults = self._terms.get(term)
        if not defaults:
            logger.warning("Unknown qualitative term", term=term)
            return []
        return [c.model_copy(deep=True) for c in defaults]

"""
Pydantic models for the vehicle search pipeline and its HTTP API.

Python attributes are snake_case; JSON on the wire is camelCase
(``maxResults``, ``scoreBreakdown``). Both spellings are accepted on input.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class SearchModel(BaseModel):
    """Base model: camelCase aliases, snake_case attributes."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


# ============================================================================
# Enums
# ============================================================================

class EntityType(str, Enum):
    """Entity categories produced by the upstream NLU extractor."""
    MAKE = "make"
    MODEL = "model"
    DERIVATIVE = "derivative"
    PRICE = "price"
    PRICE_RANGE = "price_range"
    MILEAGE = "mileage"
    ENGINE_SIZE = "engine_size"
    FUEL_TYPE = "fuel_type"
    TRANSMISSION = "transmission"
    BODY_TYPE = "body_type"
    COLOUR = "colour"
    FEATURE = "feature"
    LOCATION = "location"
    YEAR = "year"
    QUALITATIVE_TERM = "qualitative_term"


class QueryIntent(str, Enum):
    SEARCH = "search"
    REFINE = "refine"
    COMPARE = "compare"
    INFORMATION = "information"
    OFF_TOPIC = "off_topic"


class ConstraintOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    BETWEEN = "between"
    CONTAINS = "contains"
    IN = "in"


LOWER_BOUND_OPERATORS = (ConstraintOperator.GREATER_THAN, ConstraintOperator.GREATER_THAN_OR_EQUAL)
UPPER_BOUND_OPERATORS = (ConstraintOperator.LESS_THAN, ConstraintOperator.LESS_THAN_OR_EQUAL)
RANGE_OPERATORS = LOWER_BOUND_OPERATORS + UPPER_BOUND_OPERATORS + (ConstraintOperator.BETWEEN,)


class ConstraintType(str, Enum):
    EXACT = "exact"          # Structured equality / membership filter
    RANGE = "range"          # Numeric or date bound
    SEMANTIC = "semantic"    # Derived from a qualitative term
    COMPOSITE = "composite"  # Nested / multi-field


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class QueryType(str, Enum):
    SIMPLE = "simple"
    FILTERED = "filtered"
    COMPLEX = "complex"
    MULTI_MODAL = "multi_modal"


class StrategyType(str, Enum):
    EXACT_ONLY = "exact_only"
    SEMANTIC_ONLY = "semantic_only"
    HYBRID = "hybrid"
    MULTI_STAGE = "multi_stage"


class SearchApproach(str, Enum):
    EXACT_MATCH = "exact_match"
    SEMANTIC_SEARCH = "semantic_search"


class RerankingApproach(str, Enum):
    WEIGHTED_SCORE = "weighted_score"    # Factor blend only
    BUSINESS_RULES = "business_rules"    # Incoming score + rule adjustments
    HYBRID = "hybrid"                    # Factor blend + rule adjustments


class ComparisonType(str, Enum):
    LESS = "less"
    GREATER = "greater"
    LESS_OR_EQUAL = "less_or_equal"
    GREATER_OR_EQUAL = "greater_or_equal"
    EQUALS = "equals"
    IN = "in"
    CONTAINS = "contains"
    CONTAINS_ANY = "contains_any"


# ============================================================================
# Query understanding (upstream input)
# ============================================================================

class ExtractedEntity(SearchModel):
    """One entity extracted from the user's text. Immutable."""
    model_config = ConfigDict(frozen=True)

    type: EntityType
    value: str
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    start_position: int = Field(0, ge=0)
    end_position: int = Field(0, ge=0)


class ParsedQuery(SearchModel):
    original_query: str = ""
    intent: QueryIntent = QueryIntent.SEARCH
    entities: List[ExtractedEntity] = Field(default_factory=list)
    confidence_score: float = Field(1.0, ge=0.0, le=1.0)
    unmapped_terms: List[str] = Field(default_factory=list)


# ============================================================================
# Constraints and composed queries
# ============================================================================

class SearchConstraint(SearchModel):
    field_name: str
    operator: ConstraintOperator
    value: Any = None
    type: ConstraintType = ConstraintType.EXACT
    source_term: Optional[str] = Field(None, description="Qualitative term that produced this constraint")

    @model_validator(mode="after")
    def validate_between_pair(self):
        """Between values must be an ordered (low, high) pair."""
        if self.operator == ConstraintOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError(f"Between constraint on {self.field_name} needs a (low, high) pair")
            low, high = self.value
            try:
                inverted = low > high
            except TypeError:
                inverted = False
            if inverted:
                raise ValueError(f"Between constraint on {self.field_name} has low > high ({low} > {high})")
            self.value = [low, high]
        return self


class ConstraintGroup(SearchModel):
    constraints: List[SearchConstraint] = Field(default_factory=list)
    operator: LogicalOperator = LogicalOperator.AND
    priority: float = Field(1.0, ge=0.0, le=1.0)


class MappedQuery(SearchModel):
    constraints: List[SearchConstraint] = Field(default_factory=list)
    original_query: str = ""
    unmappable_terms: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ComposedQuery(SearchModel):
    type: QueryType = QueryType.SIMPLE
    constraint_groups: List[ConstraintGroup] = Field(default_factory=list)
    group_operator: LogicalOperator = LogicalOperator.AND
    warnings: List[str] = Field(default_factory=list)
    has_conflicts: bool = False
    odata_filter: str = ""

    def all_constraints(self) -> List[SearchConstraint]:
        return [c for group in self.constraint_groups for c in group.constraints]


# ============================================================================
# Strategy
# ============================================================================

class SearchStrategy(SearchModel):
    type: StrategyType = StrategyType.SEMANTIC_ONLY
    approaches: List[SearchApproach] = Field(default_factory=list)
    weights: Dict[SearchApproach, float] = Field(default_factory=dict)
    should_rerank: bool = False

    @model_validator(mode="after")
    def validate_weights(self):
        if self.weights:
            total = sum(self.weights.values())
            if abs(total - 1.0) > 0.01:
                raise ValueError(f"Strategy weights must sum to 1.0 (got {total:.3f})")
        return self

    def weight_for(self, approach: SearchApproach) -> float:
        return self.weights.get(approach, 0.0)


# ============================================================================
# Vehicles and results
# ============================================================================

class Vehicle(SearchModel):
    """Vehicle document as stored in the search index."""
    id: str
    make: str = ""
    model: str = ""
    derivative: str = ""
    body_type: str = ""
    price: float = 0.0
    mileage: int = 0
    engine_size: float = 0.0
    fuel_type: str = ""
    transmission_type: str = ""
    colour: str = ""
    number_of_doors: Optional[int] = None
    number_of_seats: Optional[int] = None
    registration_date: Optional[datetime] = None
    sale_location: str = ""
    channel: str = ""
    features: List[str] = Field(default_factory=list)
    service_history_present: bool = False
    number_of_services: Optional[int] = None
    number_of_previous_owners: Optional[int] = None
    mot_expiry_date: Optional[datetime] = None
    declarations: List[str] = Field(default_factory=list)
    description: str = ""

    @field_validator("features", "declarations", mode="before")
    @classmethod
    def parse_string_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class ScoreBreakdown(SearchModel):
    exact_match_score: float = 0.0
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    final_score: float = 0.0

    @field_validator("exact_match_score", "semantic_score", "keyword_score", "final_score", mode="after")
    @classmethod
    def clamp_scores(cls, v: float) -> float:
        return _clamp_unit(v)


class VehicleResult(SearchModel):
    vehicle: Vehicle
    score: float = 0.0
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    explanation: Optional[str] = None

    @field_validator("score", mode="after")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return _clamp_unit(v)

    @property
    def vehicle_id(self) -> str:
        return self.vehicle.id


class SearchResults(SearchModel):
    results: List[VehicleResult] = Field(default_factory=list)
    total_count: int = 0
    strategy: SearchStrategy = Field(default_factory=SearchStrategy)
    query_type: Optional[QueryType] = None
    search_duration_ms: float = 0.0
    warnings: List[str] = Field(default_factory=list)
    degraded: bool = False
    cancelled: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Conceptual mapping / explanations
# ============================================================================

class AttributeWeight(SearchModel):
    attribute: str
    weight: float = Field(..., gt=0.0, le=1.0)
    target_value: Any = None
    comparison_type: ComparisonType


class ConceptualMapping(SearchModel):
    model_config = ConfigDict(frozen=True)

    concept: str
    attribute_weights: List[AttributeWeight]
    positive_indicators: List[str] = Field(default_factory=list)
    negative_indicators: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_weight_sum(self):
        total = sum(aw.weight for aw in self.attribute_weights)
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Concept '{self.concept}' weights sum to {total:.3f}, expected 1.0")
        return self


class SimilarityScore(SearchModel):
    overall_score: float = 0.0
    component_scores: Dict[str, float] = Field(default_factory=dict)
    matching_attributes: List[str] = Field(default_factory=list)
    mismatching_attributes: List[str] = Field(default_factory=list)


class ScoreComponent(SearchModel):
    factor: str
    score: float
    weight: float
    reason: str = ""


class ExplainedScore(SearchModel):
    score: float = 0.0
    explanation: str = ""
    components: List[ScoreComponent] = Field(default_factory=list)


# ============================================================================
# Re-ranking
# ============================================================================

class RuleCondition(SearchModel):
    """Serializable predicate over one vehicle attribute."""
    attribute: str
    comparison: ComparisonType
    value: Any = None


class BusinessRule(SearchModel):
    name: str
    condition: RuleCondition
    score_adjustment: float


class RerankingStrategy(SearchModel):
    approach: RerankingApproach = RerankingApproach.HYBRID
    factor_weights: Dict[str, float] = Field(default_factory=dict)
    business_rules: List[BusinessRule] = Field(default_factory=list)
    apply_diversity: bool = True
    max_per_make: int = 3
    max_per_model: int = 2


class DiversityStats(SearchModel):
    total_results: int = 0
    unique_makes: int = 0
    unique_models: int = 0
    max_per_make: int = 0
    max_per_model: int = 0
    average_per_make: float = 0.0
    average_per_model: float = 0.0


# ============================================================================
# API Request / Response Models
# ============================================================================

class SearchRequest(SearchModel):
    """Request body for POST /search."""
    query: str = Field(..., min_length=1, max_length=500, description="Search text")
    session_id: Optional[str] = Field(None, description="Conversation session ID (for log correlation)")
    max_results: int = Field(10, description="Results to return (1-100)")
    entities: Optional[List[ExtractedEntity]] = Field(
        None,
        description="Entities already extracted by the NLU service",
    )
    intent: QueryIntent = QueryIntent.SEARCH
    unmapped_terms: List[str] = Field(default_factory=list)
    rerank: bool = Field(True, description="Apply multi-factor re-ranking + diversity")

    def to_parsed_query(self) -> ParsedQuery:
        return ParsedQuery(
            original_query=self.query,
            intent=self.intent,
            entities=list(self.entities or []),
            unmapped_terms=list(self.unmapped_terms),
        )


class SearchResponse(SearchModel):
    results: List[VehicleResult] = Field(default_factory=list)
    total_count: int = 0
    strategy: SearchStrategy
    search_duration: str
    query_type: Optional[QueryType] = None
    warnings: List[str] = Field(default_factory=list)
    degraded: bool = False


class RerankRequest(SearchModel):
    results: List[VehicleResult]
    strategy: Optional[RerankingStrategy] = None
    query: Optional[ComposedQuery] = None


class RerankResponse(SearchModel):
    results: List[VehicleResult] = Field(default_factory=list)


class ExplainRequest(SearchModel):
    vehicle_id: str = Field(..., min_length=1)
    query: ParsedQuery
    semantic_score: Optional[float] = Field(None, ge=0.0, le=1.0)


class SimilarityRequest(SearchModel):
    vehicle_id: str = Field(..., min_length=1)
    concept: str = Field(..., min_length=1)

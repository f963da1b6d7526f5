"""
Application constants and algorithm configuration.

These are values that don't change based on environment but may need
to be tuned or referenced across the codebase. Everything here is
read-only: dictionaries are wrapped in MappingProxyType and dataclasses
are frozen, so concurrent requests can share them without locking.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple


# =============================================================================
# Operator Inference
# =============================================================================

# Ordered: the first keyword found in the context wins.
OPERATOR_KEYWORDS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("under", "below", "up to"), "less_than_or_equal"),
    (("less than", "fewer than"), "less_than"),
    (("over", "above", "at least"), "greater_than_or_equal"),
    (("more than", "greater than"), "greater_than"),
    (("between", "from"), "between"),
    (("around", "about", "approximately", "roughly"), "between"),
    (("exactly", "is"), "equals"),
)

APPROXIMATE_KEYWORDS: Tuple[str, ...] = ("around", "about", "approximately", "roughly")

# Year context: inclusive from / exclusive after / inclusive until / exclusive before
YEAR_FROM_KEYWORDS: Tuple[str, ...] = ("or newer", "or later", "since", "from")
YEAR_AFTER_KEYWORDS: Tuple[str, ...] = ("newer than", "after")
YEAR_UNTIL_KEYWORDS: Tuple[str, ...] = ("or older", "or earlier")
YEAR_BEFORE_KEYWORDS: Tuple[str, ...] = ("older than", "before")
MIN_YEAR = 1900
MAX_YEAR = 2100


# =============================================================================
# Constraint Parsing
# =============================================================================

# Entity type -> index field name
ENTITY_FIELD_MAP: Mapping[str, str] = MappingProxyType({
    "make": "make",
    "model": "model",
    "derivative": "derivative",
    "price": "price",
    "price_range": "price",
    "mileage": "mileage",
    "engine_size": "engineSize",
    "fuel_type": "fuelType",
    "transmission": "transmissionType",
    "body_type": "bodyType",
    "colour": "colour",
    "feature": "features",
    "location": "saleLocation",
    "year": "registrationDate",
})

# Qualitative term -> constraint definitions (emitted as Semantic constraints).
# Override with QUALITATIVE_TERMS_FILE (same JSON shape).
DEFAULT_QUALITATIVE_TERMS: Mapping[str, Tuple[Dict[str, Any], ...]] = MappingProxyType({
    "cheap": (
        {"field_name": "price", "operator": "less_than_or_equal", "value": 12000},
    ),
    "affordable": (
        {"field_name": "price", "operator": "less_than_or_equal", "value": 15000},
    ),
    "economical": (
        {"field_name": "engineSize", "operator": "less_than_or_equal", "value": 2.0},
        {"field_name": "fuelType", "operator": "in", "value": ["Electric", "Hybrid"]},
    ),
    "low mileage": (
        {"field_name": "mileage", "operator": "less_than_or_equal", "value": 30000},
    ),
    "reliable": (
        {"field_name": "mileage", "operator": "less_than_or_equal", "value": 60000},
    ),
    "family car": (
        {"field_name": "numberOfDoors", "operator": "greater_than_or_equal", "value": 5},
        {"field_name": "bodyType", "operator": "in", "value": ["SUV", "MPV", "Estate"]},
    ),
})

# Words in unmapped terms that switch the composer to OR grouping
DISJUNCTION_KEYWORDS: Tuple[str, ...] = ("or", "either", "alternatively")


# =============================================================================
# Query Composition
# =============================================================================

@dataclass(frozen=True)
class CompositionConfig:
    """Priorities used when grouping AND-joined constraints."""

    EXACT_IDENTITY_PRIORITY: float = 1.0   # make / model
    EQUALS_PRIORITY: float = 0.9
    RANGE_PRIORITY: float = 0.6
    SEMANTIC_PRIORITY: float = 0.3
    DEFAULT_PRIORITY: float = 0.5

    HIGH_BUCKET: float = 0.8
    MEDIUM_BUCKET: float = 0.5

    IDENTITY_FIELDS: Tuple[str, ...] = ("make", "model")


DEFAULT_COMPOSITION_CONFIG = CompositionConfig()


# =============================================================================
# Search Strategy
# =============================================================================

@dataclass(frozen=True)
class StrategyConfig:
    """Hybrid weighting: exact weight grows per exact/range constraint, capped."""

    EXACT_WEIGHT_PER_CONSTRAINT: float = 0.15
    MAX_EXACT_WEIGHT: float = 0.7


DEFAULT_STRATEGY_CONFIG = StrategyConfig()


# =============================================================================
# Embedding Query Enrichment
# =============================================================================

# (trigger phrases, enrichment phrases)
EMBEDDING_ENRICHMENTS: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("economical", "fuel efficient"), ("economical vehicles", "fuel-efficient cars")),
    (("reliable",), ("reliable vehicles", "well-maintained cars")),
    (("family",), ("family vehicle", "spacious practical")),
    (("sporty", "performance"), ("sporty performance vehicles",)),
)


# =============================================================================
# Conceptual Mappings
# =============================================================================

# Weights per concept must sum to 1.0 (+/- 0.01).
# motExpiryDate targets are expressed in days until expiry.
CONCEPT_MAPPINGS: Mapping[str, Dict[str, Any]] = MappingProxyType({
    "reliable": {
        "attribute_weights": [
            {"attribute": "mileage", "weight": 0.3, "target_value": 60000, "comparison_type": "less"},
            {"attribute": "serviceHistoryPresent", "weight": 0.3, "target_value": True, "comparison_type": "equals"},
            {"attribute": "numberOfPreviousOwners", "weight": 0.2, "target_value": 2, "comparison_type": "less_or_equal"},
            {"attribute": "motExpiryDate", "weight": 0.2, "target_value": 90, "comparison_type": "greater_or_equal"},
        ],
        "positive_indicators": ["full service history", "one owner", "warranty", "full service", "low mileage"],
        "negative_indicators": ["accident damage", "high mileage", "no service history"],
    },
    "economical": {
        "attribute_weights": [
            {"attribute": "fuelType", "weight": 0.4, "target_value": ["Electric", "Hybrid", "Petrol"], "comparison_type": "in"},
            {"attribute": "engineSize", "weight": 0.3, "target_value": 2.0, "comparison_type": "less"},
            {"attribute": "price", "weight": 0.3, "target_value": 20000, "comparison_type": "less"},
        ],
        "positive_indicators": ["fuel efficient", "hybrid", "low tax", "economical", "efficient"],
        "negative_indicators": ["v8", "v6", "sports", "performance"],
    },
    "family car": {
        "attribute_weights": [
            {"attribute": "numberOfDoors", "weight": 0.3, "target_value": 5, "comparison_type": "greater_or_equal"},
            {"attribute": "numberOfSeats", "weight": 0.3, "target_value": 5, "comparison_type": "greater_or_equal"},
            {"attribute": "bodyType", "weight": 0.4, "target_value": ["SUV", "MPV", "Estate", "Hatchback"], "comparison_type": "in"},
        ],
        "positive_indicators": ["spacious", "boot space", "practical", "family", "seating"],
        "negative_indicators": ["2-door", "coupe", "sports car", "two door"],
    },
    "sporty": {
        "attribute_weights": [
            {"attribute": "engineSize", "weight": 0.4, "target_value": 2.0, "comparison_type": "greater"},
            {"attribute": "bodyType", "weight": 0.3, "target_value": ["Coupe", "Convertible", "Hatchback"], "comparison_type": "in"},
            {"attribute": "transmissionType", "weight": 0.3, "target_value": "Manual", "comparison_type": "equals"},
        ],
        "positive_indicators": ["turbo", "performance", "sport", "alloy wheels", "fast"],
        "negative_indicators": ["economical", "mpv", "family"],
    },
    "luxury": {
        "attribute_weights": [
            {"attribute": "price", "weight": 0.3, "target_value": 30000, "comparison_type": "greater"},
            {"attribute": "make", "weight": 0.4, "target_value": ["BMW", "Mercedes-Benz", "Audi", "Jaguar", "Lexus", "Mercedes"], "comparison_type": "in"},
            {"attribute": "features", "weight": 0.3, "target_value": ["leather", "navigation", "heated seats", "sunroof"], "comparison_type": "contains_any"},
        ],
        "positive_indicators": ["leather", "navigation", "heated seats", "sunroof", "premium"],
        "negative_indicators": ["basic", "budget"],
    },
    "practical": {
        "attribute_weights": [
            {"attribute": "bodyType", "weight": 0.4, "target_value": ["Estate", "MPV", "SUV", "Hatchback"], "comparison_type": "in"},
            {"attribute": "numberOfDoors", "weight": 0.3, "target_value": 4, "comparison_type": "greater_or_equal"},
            {"attribute": "fuelType", "weight": 0.3, "target_value": ["Diesel", "Hybrid", "Petrol", "Electric"], "comparison_type": "in"},
        ],
        "positive_indicators": ["boot space", "storage", "versatile", "practical", "spacious"],
        "negative_indicators": ["coupe", "sports car", "2-door"],
    },
})


@dataclass(frozen=True)
class SimilarityConfig:
    """Banding and description-boost settings for concept similarity."""

    # less-type bands as fractions of the target (mirrored for greater)
    STRONG_BAND: float = 0.7
    NEAR_BAND: float = 1.3
    STRONG_SCORE: float = 1.0
    WITHIN_SCORE: float = 0.8
    NEAR_SCORE: float = 0.5
    FAR_SCORE: float = 0.2

    POSITIVE_INDICATOR_BOOST: float = 0.05
    NEGATIVE_INDICATOR_PENALTY: float = 0.10
    MAX_DESCRIPTION_BOOST: float = 0.5

    MATCHING_THRESHOLD: float = 0.7
    MISMATCHING_THRESHOLD: float = 0.3


DEFAULT_SIMILARITY_CONFIG = SimilarityConfig()


@dataclass(frozen=True)
class ExplanationConfig:
    """Component weights for relevance explanations."""

    EXACT_COMPONENT_WEIGHT: float = 0.4
    CONCEPT_COMPONENT_WEIGHT: float = 0.3
    SEMANTIC_COMPONENT_WEIGHT: float = 0.3

    # Price within this absolute difference counts as a full match
    PRICE_EXACT_TOLERANCE: float = 1000.0

    STRONG_MATCH: float = 0.8
    PARTIAL_MATCH: float = 0.5


DEFAULT_EXPLANATION_CONFIG = ExplanationConfig()


# =============================================================================
# Result Ranking
# =============================================================================

@dataclass(frozen=True)
class RankingConfig:
    """Default multi-factor weights and condition-score bonuses."""

    FACTOR_WEIGHTS: Dict[str, float] = field(default_factory=lambda: {
        "semantic": 0.40,
        "exactMatch": 0.25,
        "priceCompetitiveness": 0.15,
        "condition": 0.10,
        "recency": 0.10,
    })

    # Condition score components (summed, capped at 1.0)
    SERVICE_HISTORY_BONUS: float = 0.3
    LOW_MILEAGE_THRESHOLD: int = 50000
    LOW_MILEAGE_BONUS: float = 0.2
    MEDIUM_MILEAGE_THRESHOLD: int = 80000
    MEDIUM_MILEAGE_BONUS: float = 0.1
    LONG_MOT_DAYS: int = 90
    LONG_MOT_BONUS: float = 0.2
    SHORT_MOT_DAYS: int = 30
    SHORT_MOT_BONUS: float = 0.1
    MAX_OWNERS_FOR_BONUS: int = 2
    FEW_OWNERS_BONUS: float = 0.2
    NO_DAMAGE_BONUS: float = 0.1
    DAMAGE_KEYWORDS: Tuple[str, ...] = ("damage", "accident")

    # Recency buckets: (max age in years, score)
    RECENCY_BUCKETS: Tuple[Tuple[int, float], ...] = (
        (1, 1.0),
        (3, 0.8),
        (5, 0.6),
        (10, 0.4),
    )
    RECENCY_FLOOR: float = 0.2
    UNKNOWN_FACTOR_SCORE: float = 0.5

    WEIGHT_TOLERANCE: float = 0.001

    MAX_PER_MAKE: int = 3
    MAX_PER_MODEL: int = 2


DEFAULT_RANKING_CONFIG = RankingConfig()


DEFAULT_BUSINESS_RULES: Tuple[Dict[str, Any], ...] = (
    {
        "name": "Boost Premium Makes",
        "condition": {
            "attribute": "make",
            "comparison": "in",
            "value": ["BMW", "Mercedes-Benz", "Audi", "Porsche", "Jaguar", "Land Rover"],
        },
        "score_adjustment": 0.05,
    },
    {
        "name": "Penalize High Mileage",
        "condition": {"attribute": "mileage", "comparison": "greater", "value": 100000},
        "score_adjustment": -0.15,
    },
    {
        "name": "Boost Full Service History",
        "condition": {"attribute": "serviceHistoryPresent", "comparison": "equals", "value": True},
        "score_adjustment": 0.10,
    },
    {
        "name": "Penalize Accident Damage",
        "condition": {"attribute": "declarations", "comparison": "contains_any", "value": ["damage", "accident"]},
        "score_adjustment": -0.20,
    },
    {
        "name": "Boost Electric/Hybrid",
        "condition": {"attribute": "fuelType", "comparison": "in", "value": ["Electric", "Hybrid", "Plug-in Hybrid"]},
        "score_adjustment": 0.08,
    },
    {
        "name": "Penalize Near MOT Expiry",
        "condition": {"attribute": "motExpiryDate", "comparison": "less", "value": 30},
        "score_adjustment": -0.10,
    },
)

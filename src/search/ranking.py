"""
ResultRankingService: multi-factor re-ranking with business rules.

Factors (default weights):
    semantic               0.40  semantic score from retrieval
    exactMatch             0.25  share of exact/range constraints satisfied
    priceCompetitiveness   0.15  cheaper within the current result set
    condition              0.10  service history, mileage, MOT, owners, damage
    recency                0.10  registration age buckets

Every stage returns new VehicleResult objects; inputs are never mutated.
Final scores are clamped to [0, 1].
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from config.constants import DEFAULT_BUSINESS_RULES, DEFAULT_RANKING_CONFIG, RankingConfig
from core.exceptions import ConfigurationError
from core.logging import get_logger
from core.utils import clamp, ensure_utc, utc_now
from search.diversity import DiversityEnhancer
from search.models import (
    BusinessRule,
    ComparisonType,
    ComposedQuery,
    ConstraintType,
    RerankingApproach,
    RerankingStrategy,
    Vehicle,
    VehicleResult,
)
from search.similarity import attribute_value, compare, constraint_matches

logger = get_logger(__name__)


SEMANTIC = "semantic"
EXACT_MATCH = "exactMatch"
PRICE_COMPETITIVENESS = "priceCompetitiveness"
CONDITION = "condition"
RECENCY = "recency"


def default_business_rules() -> List[BusinessRule]:
    return [BusinessRule.model_validate(rule) for rule in DEFAULT_BUSINESS_RULES]


def default_reranking_strategy(config: RankingConfig = DEFAULT_RANKING_CONFIG) -> RerankingStrategy:
    return RerankingStrategy(
        approach=RerankingApproach.HYBRID,
        factor_weights=dict(config.FACTOR_WEIGHTS),
        business_rules=default_business_rules(),
        apply_diversity=True,
        max_per_make=config.MAX_PER_MAKE,
        max_per_model=config.MAX_PER_MODEL,
    )


def rule_matches(rule: BusinessRule, vehicle: Vehicle, now: Optional[datetime] = None) -> bool:
    condition = rule.condition
    return compare(attribute_value(vehicle, condition.attribute, now), condition.comparison, condition.value)


class ResultRankingService:
    """Re-ranks retrieval results. Stateless; safe to share across requests."""

    def __init__(
        self,
        diversity: Optional[DiversityEnhancer] = None,
        config: RankingConfig = DEFAULT_RANKING_CONFIG,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._diversity = diversity or DiversityEnhancer()
        self._config = config
        self._clock = clock
        self._default_strategy = default_reranking_strategy(config)

    @property
    def default_strategy(self) -> RerankingStrategy:
        return self._default_strategy

    def rank_results(
        self,
        results: Sequence[VehicleResult],
        query: Optional[ComposedQuery] = None,
    ) -> List[VehicleResult]:
        return self.rerank_results(results, self._default_strategy, query)

    def rerank_results(
        self,
        results: Sequence[VehicleResult],
        strategy: RerankingStrategy,
        query: Optional[ComposedQuery] = None,
    ) -> List[VehicleResult]:
        """
        Score, apply rules, clamp, then sort (and optionally diversify).

        Raises:
            ConfigurationError: Invalid caps or factor weights.
        """
        weights = self.validate_strategy(strategy)
        if not results:
            return []

        now = self._clock()
        logger.info(
            "Re-ranking results",
            count=len(results),
            approach=strategy.approach.value,
            rules=len(strategy.business_rules),
        )

        if strategy.approach == RerankingApproach.BUSINESS_RULES:
            ranked = list(results)
        else:
            ranked = self.apply_weighted_scoring(results, weights, query, now)

        if strategy.approach != RerankingApproach.WEIGHTED_SCORE and strategy.business_rules:
            ranked = self.apply_business_rules(ranked, strategy.business_rules, now)

        if strategy.apply_diversity:
            ranked = self._diversity.ensure_diversity(ranked, strategy.max_per_make, strategy.max_per_model)
        else:
            ranked = sorted(ranked, key=lambda r: r.score, reverse=True)

        return ranked

    def validate_strategy(self, strategy: RerankingStrategy) -> Dict[str, float]:
        """Check caps and return factor weights normalized to sum to 1.0."""
        if strategy.max_per_make <= 0 or strategy.max_per_model <= 0:
            raise ConfigurationError(
                f"max_per_make and max_per_model must be positive "
                f"(got {strategy.max_per_make}, {strategy.max_per_model})"
            )

        weights = dict(strategy.factor_weights or self._config.FACTOR_WEIGHTS)
        if any(w < 0 for w in weights.values()):
            raise ConfigurationError("Factor weights must be non-negative")

        total = sum(weights.values())
        if total <= 0:
            raise ConfigurationError("Factor weights must not all be zero")
        if abs(total - 1.0) > self._config.WEIGHT_TOLERANCE:
            logger.warning("Factor weights do not sum to 1.0; normalizing", total=round(total, 4))
            weights = {name: w / total for name, w in weights.items()}
        return weights

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def apply_weighted_scoring(
        self,
        results: Sequence[VehicleResult],
        weights: Dict[str, float],
        query: Optional[ComposedQuery] = None,
        now: Optional[datetime] = None,
    ) -> List[VehicleResult]:
        now = now or self._clock()
        prices = [r.vehicle.price for r in results]
        low, high = min(prices), max(prices)

        scored = []
        for result in results:
            factors = {
                SEMANTIC: self.semantic_score(result),
                EXACT_MATCH: self.exact_match_score(result.vehicle, query, now),
                PRICE_COMPETITIVENESS: self.price_score(result.vehicle, low, high, len(results)),
                CONDITION: self.condition_score(result.vehicle, now),
                RECENCY: self.recency_score(result.vehicle, now),
            }
            score = clamp(sum(
                factors.get(name, self._config.UNKNOWN_FACTOR_SCORE) * weight
                for name, weight in weights.items()
            ))
            logger.debug(
                "Scored vehicle",
                vehicle_id=result.vehicle.id,
                score=round(score, 3),
                **{name: round(value, 3) for name, value in factors.items()},
            )
            scored.append(result.model_copy(update={
                "score": score,
                "score_breakdown": result.score_breakdown.model_copy(update={"final_score": score}),
            }))
        return scored

    def apply_business_rules(
        self,
        results: Sequence[VehicleResult],
        rules: Sequence[BusinessRule],
        now: Optional[datetime] = None,
    ) -> List[VehicleResult]:
        now = now or self._clock()
        adjusted = []
        for result in results:
            applied = [rule for rule in rules if rule_matches(rule, result.vehicle, now)]
            if not applied:
                adjusted.append(result)
                continue

            adjustment = sum(rule.score_adjustment for rule in applied)
            score = clamp(result.score + adjustment)
            logger.debug(
                "Applied business rules",
                vehicle_id=result.vehicle.id,
                rules=[rule.name for rule in applied],
                adjustment=round(adjustment, 3),
            )
            adjusted.append(result.model_copy(update={
                "score": score,
                "score_breakdown": result.score_breakdown.model_copy(update={"final_score": score}),
            }))
        return adjusted

    def compute_business_score(self, result: VehicleResult, query: Optional[ComposedQuery] = None) -> float:
        """Default-weighted score plus default rules for a single result, without set context."""
        now = self._clock()
        factors = {
            SEMANTIC: self.semantic_score(result),
            EXACT_MATCH: self.exact_match_score(result.vehicle, query, now),
            PRICE_COMPETITIVENESS: self._config.UNKNOWN_FACTOR_SCORE,
            CONDITION: self.condition_score(result.vehicle, now),
            RECENCY: self.recency_score(result.vehicle, now),
        }
        weighted = sum(factors[name] * weight for name, weight in self._config.FACTOR_WEIGHTS.items())
        adjustment = sum(
            rule.score_adjustment
            for rule in self._default_strategy.business_rules
            if rule_matches(rule, result.vehicle, now)
        )
        return clamp(weighted + adjustment)

    # -------------------------------------------------------------------------
    # Factors
    # -------------------------------------------------------------------------

    @staticmethod
    def semantic_score(result: VehicleResult) -> float:
        breakdown = result.score_breakdown
        if breakdown.semantic_score > 0:
            return breakdown.semantic_score
        return result.score

    def exact_match_score(self, vehicle: Vehicle, query: Optional[ComposedQuery], now: datetime) -> float:
        if query is None:
            return self._config.UNKNOWN_FACTOR_SCORE
        constraints = [c for c in query.all_constraints() if c.type in (ConstraintType.EXACT, ConstraintType.RANGE)]
        if not constraints:
            return self._config.UNKNOWN_FACTOR_SCORE
        matched = sum(1 for c in constraints if constraint_matches(vehicle, c, now))
        return matched / len(constraints)

    def price_score(self, vehicle: Vehicle, low: float, high: float, count: int) -> float:
        """1 - (price - min) / (max - min) over the current result set."""
        if count <= 1 or high == low:
            return self._config.UNKNOWN_FACTOR_SCORE
        return clamp(1.0 - (vehicle.price - low) / (high - low))

    def condition_score(self, vehicle: Vehicle, now: Optional[datetime] = None) -> float:
        cfg = self._config
        now = now or self._clock()
        score = 0.0

        if vehicle.service_history_present:
            score += cfg.SERVICE_HISTORY_BONUS

        if vehicle.mileage < cfg.LOW_MILEAGE_THRESHOLD:
            score += cfg.LOW_MILEAGE_BONUS
        elif vehicle.mileage < cfg.MEDIUM_MILEAGE_THRESHOLD:
            score += cfg.MEDIUM_MILEAGE_BONUS

        if vehicle.mot_expiry_date is not None:
            days = (ensure_utc(vehicle.mot_expiry_date) - now).total_seconds() / 86400
            if days > cfg.LONG_MOT_DAYS:
                score += cfg.LONG_MOT_BONUS
            elif days > cfg.SHORT_MOT_DAYS:
                score += cfg.SHORT_MOT_BONUS

        owners = vehicle.number_of_previous_owners
        if owners is not None and owners <= cfg.MAX_OWNERS_FOR_BONUS:
            score += cfg.FEW_OWNERS_BONUS

        if not compare(vehicle.declarations, ComparisonType.CONTAINS_ANY, list(cfg.DAMAGE_KEYWORDS)):
            score += cfg.NO_DAMAGE_BONUS

        return min(1.0, score)

    def recency_score(self, vehicle: Vehicle, now: Optional[datetime] = None) -> float:
        cfg = self._config
        if vehicle.registration_date is None:
            return cfg.UNKNOWN_FACTOR_SCORE

        now = now or self._clock()
        age = now.year - ensure_utc(vehicle.registration_date).year
        for max_age, score in cfg.RECENCY_BUCKETS:
            if age <= max_age:
                return score
        return cfg.RECENCY_FLOOR

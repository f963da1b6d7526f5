"""
ConceptualMapper: qualitative terms -> weighted attribute comparisons,
plus per-vehicle relevance explanations.
"""

from typing import Dict, List, Mapping, Optional

from config.constants import (
    CONCEPT_MAPPINGS,
    DEFAULT_EXPLANATION_CONFIG,
    ExplanationConfig,
)
from core.logging import get_logger
from core.utils import clamp, parse_number
from search.models import (
    ConceptualMapping,
    EntityType,
    ExplainedScore,
    ExtractedEntity,
    ParsedQuery,
    ScoreComponent,
    SimilarityScore,
    Vehicle,
)
from search.similarity import SimilarityScorer

logger = get_logger(__name__)


def build_concept_mappings(raw: Mapping[str, dict]) -> Dict[str, ConceptualMapping]:
    """Validate the concept dictionary. Weight sums are checked by the model."""
    return {
        name.lower(): ConceptualMapping(concept=name, **definition)
        for name, definition in raw.items()
    }


def _price_target(entity: ExtractedEntity) -> Optional[float]:
    try:
        target = parse_number(entity.value)
    except ValueError:
        logger.debug("Ignoring non-numeric price entity", value=entity.value)
        return None
    return target if target > 0 else None


# Exact-match entity type -> (factor name, vehicle attribute)
_EXACT_FACTORS = {
    EntityType.MAKE: ("Make Match", "make"),
    EntityType.MODEL: ("Model Match", "model"),
    EntityType.LOCATION: ("Location Match", "sale_location"),
}


class ConceptualMapper:
    """Concept lookup, concept similarity and relevance explanations."""

    def __init__(
        self,
        mappings: Optional[Mapping[str, dict]] = None,
        scorer: Optional[SimilarityScorer] = None,
        config: ExplanationConfig = DEFAULT_EXPLANATION_CONFIG,
    ):
        self._mappings = build_concept_mappings(mappings if mappings is not None else CONCEPT_MAPPINGS)
        self._scorer = scorer or SimilarityScorer()
        self._config = config

    @property
    def concepts(self) -> List[str]:
        return [m.concept for m in self._mappings.values()]

    def map_concept_to_attributes(self, concept: str) -> Optional[ConceptualMapping]:
        """Case-insensitive lookup; unknown concepts return None."""
        mapping = self._mappings.get((concept or "").strip().lower())
        if mapping is None:
            logger.warning("No mapping found for concept", concept=concept)
        return mapping

    def compute_similarity(self, vehicle: Vehicle, mapping: ConceptualMapping) -> SimilarityScore:
        score = self._scorer.compute_score(vehicle, mapping)
        logger.info(
            "Computed concept similarity",
            vehicle_id=vehicle.id,
            concept=mapping.concept,
            score=round(score.overall_score, 3),
            matching=len(score.matching_attributes),
            mismatching=len(score.mismatching_attributes),
        )
        return score

    # -------------------------------------------------------------------------
    # Explanations
    # -------------------------------------------------------------------------

    def explain_relevance(
        self,
        vehicle: Vehicle,
        query: ParsedQuery,
        semantic_score: Optional[float] = None,
    ) -> ExplainedScore:
        """
        Weighted average of the components the query actually exercises.

        Weights are renormalized over the components present, so a query
        with only a make, or only a qualitative term, still scores in [0, 1].
        """
        cfg = self._config
        components: List[ScoreComponent] = []

        for entity in query.entities:
            component = self._exact_component(vehicle, entity)
            if component is not None:
                components.append(component)

        for entity in query.entities:
            if entity.type == EntityType.QUALITATIVE_TERM:
                component = self._concept_component(vehicle, entity)
                if component is not None:
                    components.append(component)

        if semantic_score is not None:
            components.append(ScoreComponent(
                factor="Semantic Similarity",
                score=clamp(semantic_score),
                weight=cfg.SEMANTIC_COMPONENT_WEIGHT,
                reason="Similarity between the vehicle description and your search",
            ))

        total_weight = sum(c.weight for c in components)
        score = clamp(sum(c.score * c.weight for c in components) / total_weight) if total_weight > 0 else 0.0
        explanation = self._explanation_text(query, score)

        logger.info(
            "Explained relevance",
            vehicle_id=vehicle.id,
            score=round(score, 3),
            components=len(components),
        )
        return ExplainedScore(score=score, explanation=explanation, components=components)

    def _exact_component(self, vehicle: Vehicle, entity: ExtractedEntity) -> Optional[ScoreComponent]:
        cfg = self._config
        if entity.type in _EXACT_FACTORS:
            factor, attribute = _EXACT_FACTORS[entity.type]
            actual = getattr(vehicle, attribute) or ""
            matched = actual.strip().lower() == entity.value.strip().lower()
            return ScoreComponent(
                factor=factor,
                score=1.0 if matched else 0.0,
                weight=cfg.EXACT_COMPONENT_WEIGHT,
                reason=f"Exact match for {entity.value}" if matched else f"Looking for {entity.value}, found {actual or 'unknown'}",
            )

        if entity.type == EntityType.PRICE:
            target = _price_target(entity)
            if target is None:
                return None
            diff = abs(vehicle.price - target)
            score = 1.0 if diff < cfg.PRICE_EXACT_TOLERANCE else max(0.0, 1.0 - diff / target)
            return ScoreComponent(
                factor="Price Match",
                score=score,
                weight=cfg.EXACT_COMPONENT_WEIGHT,
                reason=f"Price £{vehicle.price:,.0f} near target £{target:,.0f}",
            )
        return None

    def _concept_component(self, vehicle: Vehicle, entity: ExtractedEntity) -> Optional[ScoreComponent]:
        cfg = self._config
        mapping = self.map_concept_to_attributes(entity.value)
        if mapping is None:
            return None

        similarity = self.compute_similarity(vehicle, mapping)
        if similarity.overall_score >= cfg.STRONG_MATCH:
            strength = "Strongly"
        elif similarity.overall_score >= cfg.PARTIAL_MATCH:
            strength = "Partially"
        else:
            strength = "Weakly"

        reason = f"{strength} matches '{entity.value}' criteria"
        if similarity.matching_attributes:
            reason += ": " + ", ".join(similarity.matching_attributes)

        return ScoreComponent(
            factor=f"Conceptual: {entity.value}",
            score=similarity.overall_score,
            weight=cfg.CONCEPT_COMPONENT_WEIGHT,
            reason=reason,
        )

    def _explanation_text(self, query: ParsedQuery, score: float) -> str:
        cfg = self._config
        if score >= cfg.STRONG_MATCH:
            quality = "strongly matches"
        elif score >= cfg.PARTIAL_MATCH:
            quality = "matches"
        else:
            quality = "partially matches"

        parts = [f"This vehicle {quality} your search"]

        identity = [e.value for e in query.entities if e.type in (EntityType.MAKE, EntityType.MODEL)]
        if identity:
            parts.append("for a " + " ".join(identity))

        price = next((e for e in query.entities if e.type == EntityType.PRICE), None)
        target = _price_target(price) if price is not None else None
        if target is not None:
            parts.append(f"around £{target:,.0f}")

        terms = [e.value for e in query.entities if e.type == EntityType.QUALITATIVE_TERM]
        if terms:
            parts.append(f"with {', '.join(terms)} characteristics")

        return " ".join(parts) + "."

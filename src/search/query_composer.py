"""
QueryComposer: MappedQuery -> ComposedQuery.

Groups constraints, classifies the query, resolves conflicts and
renders the backend filter.
"""

from collections import OrderedDict
from typing import List, Optional

from config.constants import DEFAULT_COMPOSITION_CONFIG, DISJUNCTION_KEYWORDS, CompositionConfig
from core.logging import get_logger
from search.conflict_resolver import ConflictResolver
from search.models import (
    ComposedQuery,
    ConstraintGroup,
    ConstraintOperator,
    ConstraintType,
    LogicalOperator,
    MappedQuery,
    QueryType,
    SearchConstraint,
)
from search.odata import ODataTranslator

logger = get_logger(__name__)


NO_CONSTRAINTS_WARNING = "No constraints provided"


class QueryComposer:
    """Builds ComposedQuery objects from mapped constraints."""

    def __init__(
        self,
        conflict_resolver: Optional[ConflictResolver] = None,
        translator: Optional[ODataTranslator] = None,
        config: CompositionConfig = DEFAULT_COMPOSITION_CONFIG,
    ):
        self._resolver = conflict_resolver or ConflictResolver()
        self._translator = translator or ODataTranslator()
        self._config = config

    def compose_query(self, mapped_query: MappedQuery) -> ComposedQuery:
        constraints = mapped_query.constraints
        if not constraints:
            logger.warning("Mapped query has no constraints")
            return ComposedQuery(
                type=QueryType.SIMPLE,
                group_operator=LogicalOperator.AND,
                warnings=[NO_CONSTRAINTS_WARNING],
            )

        query_type = self.determine_query_type(constraints)
        has_or = self.detect_or_operator(mapped_query)
        groups = self._group_constraints(constraints, has_or)

        composed = ComposedQuery(
            type=query_type,
            constraint_groups=groups,
            group_operator=LogicalOperator.OR if has_or else LogicalOperator.AND,
        )

        conflicts = self._resolver.detect_conflicts(composed)
        composed = composed.model_copy(update={
            "has_conflicts": bool(conflicts),
            "warnings": list(conflicts),
        })
        composed = self._resolver.resolve_conflicts(composed)
        composed = composed.model_copy(update={"odata_filter": self._translator.to_filter(composed)})

        logger.info(
            "Composed query",
            query_type=query_type.value,
            groups=len(composed.constraint_groups),
            has_conflicts=composed.has_conflicts,
            warnings=len(composed.warnings),
        )
        return composed

    def validate_query(self, query: ComposedQuery) -> bool:
        """False on contradictions / inversions, or when nothing can be filtered."""
        conflicts = self._resolver.detect_conflicts(query)
        if any("inversion" in c.lower() or "contradictory" in c.lower() for c in conflicts):
            logger.warning("Query validation failed: critical conflicts", conflicts=conflicts)
            return False

        if not self._translator.to_filter(query).strip():
            logger.warning("Query validation failed: empty filter")
            return False
        return True

    def resolve_conflicts(self, query: ComposedQuery) -> ComposedQuery:
        resolved = self._resolver.resolve_conflicts(query)
        return resolved.model_copy(update={"odata_filter": self._translator.to_filter(resolved)})

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    @staticmethod
    def determine_query_type(constraints: List[SearchConstraint]) -> QueryType:
        types = {c.type for c in constraints}
        has_semantic = ConstraintType.SEMANTIC in types
        has_structured = bool(types & {ConstraintType.EXACT, ConstraintType.RANGE})

        if has_semantic and has_structured:
            return QueryType.MULTI_MODAL
        if has_semantic or ConstraintType.COMPOSITE in types:
            return QueryType.COMPLEX
        if len(constraints) == 1:
            return QueryType.SIMPLE
        return QueryType.FILTERED

    @staticmethod
    def detect_or_operator(mapped_query: MappedQuery) -> bool:
        flag = mapped_query.metadata.get("hasOrOperator")
        if isinstance(flag, bool):
            return flag
        if isinstance(flag, str) and flag.strip().lower() in ("true", "false"):
            return flag.strip().lower() == "true"

        for term in mapped_query.unmappable_terms:
            if any(word in DISJUNCTION_KEYWORDS for word in term.lower().split()):
                return True
        return False

    # -------------------------------------------------------------------------
    # Grouping
    # -------------------------------------------------------------------------

    def priority(self, constraint: SearchConstraint) -> float:
        cfg = self._config
        if constraint.type == ConstraintType.EXACT and constraint.field_name in cfg.IDENTITY_FIELDS:
            return cfg.EXACT_IDENTITY_PRIORITY
        if constraint.operator == ConstraintOperator.EQUALS:
            return cfg.EQUALS_PRIORITY
        if constraint.type == ConstraintType.RANGE:
            return cfg.RANGE_PRIORITY
        if constraint.type == ConstraintType.SEMANTIC:
            return cfg.SEMANTIC_PRIORITY
        return cfg.DEFAULT_PRIORITY

    def _group_constraints(self, constraints: List[SearchConstraint], has_or: bool) -> List[ConstraintGroup]:
        if has_or:
            by_field: "OrderedDict[str, List[SearchConstraint]]" = OrderedDict()
            for c in constraints:
                by_field.setdefault(c.field_name, []).append(c)
            return [
                ConstraintGroup(
                    constraints=members,
                    operator=LogicalOperator.OR,
                    priority=self.priority(members[0]),
                )
                for members in by_field.values()
            ]

        cfg = self._config
        high, medium, low = [], [], []
        for c in constraints:
            p = self.priority(c)
            if p >= cfg.HIGH_BUCKET:
                high.append(c)
            elif p >= cfg.MEDIUM_BUCKET:
                medium.append(c)
            else:
                low.append(c)

        groups = []
        for members, group_priority in ((high, cfg.EXACT_IDENTITY_PRIORITY),
                                        (medium, cfg.RANGE_PRIORITY),
                                        (low, cfg.SEMANTIC_PRIORITY)):
            if members:
                groups.append(ConstraintGroup(
                    constraints=members,
                    operator=LogicalOperator.AND,
                    priority=group_priority,
                ))
        return groups

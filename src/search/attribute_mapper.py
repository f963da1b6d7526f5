"""
AttributeMapper: runs the ConstraintParser over every entity of a parsed query.
"""

from collections import Counter
from typing import Optional

from core.logging import get_logger
from search.constraint_parser import ConstraintParser
from search.models import ConstraintType, MappedQuery, ParsedQuery

logger = get_logger(__name__)


class AttributeMapper:
    """Maps a ParsedQuery onto a flat list of SearchConstraints."""

    def __init__(self, parser: Optional[ConstraintParser] = None):
        self._parser = parser or ConstraintParser()

    def map_to_search_query(self, parsed_query: ParsedQuery) -> MappedQuery:
        """
        Parse every entity with the original query text as context.

        Entities that yield no constraints are added to unmappable_terms;
        constraint order follows entity order.
        """
        context = parsed_query.original_query or ""
        constraints = []
        unmappable = list(parsed_query.unmapped_terms)

        for entity in parsed_query.entities:
            parsed = self._parser.parse_entity(entity, context)
            if not parsed:
                unmappable.append(entity.value)
                continue
            constraints.extend(parsed)

        counts = Counter(c.type for c in constraints)
        metadata = {
            "totalConstraints": len(constraints),
            "exactMatches": counts[ConstraintType.EXACT],
            "rangeFilters": counts[ConstraintType.RANGE],
            "semanticFilters": counts[ConstraintType.SEMANTIC],
            "compositeFilters": counts[ConstraintType.COMPOSITE],
            "intent": parsed_query.intent.value,
        }

        logger.info(
            "Mapped query to constraints",
            entities=len(parsed_query.entities),
            constraints=len(constraints),
            unmappable=len(unmappable) - len(parsed_query.unmapped_terms),
        )

        return MappedQuery(
            constraints=constraints,
            original_query=parsed_query.original_query,
            unmappable_terms=unmappable,
            metadata=metadata,
        )

"""
Conflict detection and range merging for composed queries.

Only AND-joined groups are inspected. OR-joined groups have union
semantics, so nothing in them can contradict or be merged.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import ConflictWarning
from core.logging import get_logger
from search.models import (
    ComposedQuery,
    ConstraintGroup,
    ConstraintOperator,
    ConstraintType,
    LogicalOperator,
    LOWER_BOUND_OPERATORS,
    RANGE_OPERATORS,
    SearchConstraint,
    UPPER_BOUND_OPERATORS,
)

logger = get_logger(__name__)


# (value, inclusive)
Bound = Tuple[Any, bool]


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _greater(a: Any, b: Any) -> Optional[bool]:
    """a > b, or None when the values aren't comparable."""
    try:
        return a > b
    except TypeError:
        return None


def _tightest_lower(bounds: List[Bound]) -> Optional[Bound]:
    best: Optional[Bound] = None
    for value, inclusive in bounds:
        if best is None:
            best = (value, inclusive)
            continue
        if _greater(value, best[0]):
            best = (value, inclusive)
        elif value == best[0] and not inclusive:
            best = (value, False)
    return best


def _tightest_upper(bounds: List[Bound]) -> Optional[Bound]:
    best: Optional[Bound] = None
    for value, inclusive in bounds:
        if best is None:
            best = (value, inclusive)
            continue
        if _greater(best[0], value):
            best = (value, inclusive)
        elif value == best[0] and not inclusive:
            best = (value, False)
    return best


class ConflictResolver:
    """Detects contradictory constraints and merges overlapping ranges."""

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def find_conflicts(self, query: ComposedQuery) -> List[ConflictWarning]:
        conflicts: List[ConflictWarning] = []

        for group in query.constraint_groups:
            if group.operator != LogicalOperator.AND:
                continue

            by_field: Dict[str, List[SearchConstraint]] = defaultdict(list)
            for constraint in group.constraints:
                by_field[constraint.field_name].append(constraint)

            for field_name, constraints in by_field.items():
                if len(constraints) < 2:
                    continue
                conflicts.extend(self._contradictions(field_name, constraints))
                conflicts.extend(self._inversions(field_name, constraints))

        for conflict in conflicts:
            logger.warning("Constraint conflict", conflict=str(conflict))
        return conflicts

    def detect_conflicts(self, query: ComposedQuery) -> List[str]:
        """Human-readable conflict messages. Never raises."""
        return [str(conflict) for conflict in self.find_conflicts(query)]

    @staticmethod
    def _contradictions(field_name: str, constraints: List[SearchConstraint]) -> List[ConflictWarning]:
        seen: Dict[Any, Any] = {}
        for c in constraints:
            if c.operator != ConstraintOperator.EQUALS:
                continue
            key = _normalize(c.value)
            try:
                seen.setdefault(key, c.value)
            except TypeError:
                continue
        if len(seen) < 2:
            return []
        values = ", ".join(str(v) for v in seen.values())
        return [ConflictWarning(f"Contradictory values for {field_name}: {values}")]

    @staticmethod
    def _inversions(field_name: str, constraints: List[SearchConstraint]) -> List[ConflictWarning]:
        lows = [c.value for c in constraints if c.operator in LOWER_BOUND_OPERATORS]
        highs = [c.value for c in constraints if c.operator in UPPER_BOUND_OPERATORS]

        conflicts = []
        for low in lows:
            for high in highs:
                if _greater(low, high):
                    conflicts.append(ConflictWarning(
                        f"Range inversion detected for {field_name}: {low} > {high}"
                    ))
        return conflicts

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve_conflicts(self, query: ComposedQuery) -> ComposedQuery:
        """
        Merge overlapping range constraints per field within AND groups.

        The intersection (tightest low, tightest high) replaces the
        originals. An empty intersection keeps the originals and adds an
        "Impossible range" warning. Empty groups are dropped.
        """
        warnings = list(query.warnings)
        impossible = False
        groups: List[ConstraintGroup] = []

        for group in query.constraint_groups:
            if group.operator != LogicalOperator.AND:
                if group.constraints:
                    groups.append(group.model_copy(deep=True))
                continue

            merged, group_warnings, group_impossible = self._merge_group(group)
            warnings.extend(group_warnings)
            impossible = impossible or group_impossible
            if merged:
                groups.append(group.model_copy(update={"constraints": merged}))

        return query.model_copy(update={
            "constraint_groups": groups,
            "warnings": warnings,
            "has_conflicts": query.has_conflicts or impossible,
        })

    def _merge_group(self, group: ConstraintGroup) -> Tuple[List[SearchConstraint], List[str], bool]:
        # Semantic and structured bounds on one field are merged separately so
        # query-type and strategy counts stay stable.
        range_sets: Dict[Tuple[str, bool], List[int]] = defaultdict(list)
        for index, c in enumerate(group.constraints):
            if c.operator in RANGE_OPERATORS:
                range_sets[(c.field_name, c.type == ConstraintType.SEMANTIC)].append(index)

        replacements: Dict[int, List[SearchConstraint]] = {}
        dropped = set()
        warnings: List[str] = []
        impossible = False

        for (field_name, _semantic), indices in range_sets.items():
            if len(indices) < 2:
                continue
            originals = [group.constraints[i] for i in indices]
            merged, warning, empty = self._merge_ranges(field_name, originals)
            if warning:
                warnings.append(warning)
            impossible = impossible or empty
            if merged is None:
                continue
            replacements[indices[0]] = merged
            dropped.update(indices[1:])

        constraints: List[SearchConstraint] = []
        for index, c in enumerate(group.constraints):
            if index in dropped:
                continue
            constraints.extend(replacements.get(index, [c]))
        return constraints, warnings, impossible

    @staticmethod
    def _merge_ranges(
        field_name: str,
        constraints: List[SearchConstraint],
    ) -> Tuple[Optional[List[SearchConstraint]], Optional[str], bool]:
        """Returns (replacement constraints or None to keep originals, warning, impossible)."""
        lows: List[Bound] = []
        highs: List[Bound] = []
        for c in constraints:
            if c.operator == ConstraintOperator.GREATER_THAN:
                lows.append((c.value, False))
            elif c.operator == ConstraintOperator.GREATER_THAN_OR_EQUAL:
                lows.append((c.value, True))
            elif c.operator == ConstraintOperator.LESS_THAN:
                highs.append((c.value, False))
            elif c.operator == ConstraintOperator.LESS_THAN_OR_EQUAL:
                highs.append((c.value, True))
            elif c.operator == ConstraintOperator.BETWEEN:
                lows.append((c.value[0], True))
                highs.append((c.value[1], True))

        low = _tightest_lower(lows)
        high = _tightest_upper(highs)
        template = constraints[0]
        ctype = ConstraintType.SEMANTIC if template.type == ConstraintType.SEMANTIC else ConstraintType.RANGE

        def bound(op: ConstraintOperator, value: Any) -> SearchConstraint:
            return SearchConstraint(
                field_name=field_name,
                operator=op,
                value=value,
                type=ctype,
                source_term=template.source_term,
            )

        if low is not None and high is not None:
            inverted = _greater(low[0], high[0])
            if inverted is None:
                return None, None, False
            if inverted or (low[0] == high[0] and not (low[1] and high[1])):
                return None, f"Impossible range for {field_name}: [{low[0]}, {high[0]}]", True

            if low[1] and high[1]:
                merged = [bound(ConstraintOperator.BETWEEN, [low[0], high[0]])]
            else:
                merged = [
                    bound(ConstraintOperator.GREATER_THAN_OR_EQUAL if low[1] else ConstraintOperator.GREATER_THAN, low[0]),
                    bound(ConstraintOperator.LESS_THAN_OR_EQUAL if high[1] else ConstraintOperator.LESS_THAN, high[0]),
                ]
            return merged, f"Merged overlapping ranges for {field_name} into [{low[0]}, {high[0]}]", False

        if low is not None:
            op = ConstraintOperator.GREATER_THAN_OR_EQUAL if low[1] else ConstraintOperator.GREATER_THAN
            return [bound(op, low[0])], None, False

        op = ConstraintOperator.LESS_THAN_OR_EQUAL if high[1] else ConstraintOperator.LESS_THAN
        return [bound(op, high[0])], None, False

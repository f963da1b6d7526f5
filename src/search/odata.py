"""
ODataTranslator: ComposedQuery -> backend filter expression.

Grammar:
    field eq 'v'   field ne 'v'   field gt|ge|lt|le 123
    (field ge low and field le high)
    search.in(field, 'a,b', ',')
    search.ismatch('v', 'field')

Constraints join with their group's operator; every group is
parenthesized; groups join with the query's group operator.
"""

from datetime import date, datetime, timezone
from typing import Any, List

from core.logging import get_logger
from search.models import ComposedQuery, ConstraintGroup, ConstraintOperator, SearchConstraint

logger = get_logger(__name__)


_COMPARISON_SYNTAX = {
    ConstraintOperator.EQUALS: "eq",
    ConstraintOperator.NOT_EQUALS: "ne",
    ConstraintOperator.GREATER_THAN: "gt",
    ConstraintOperator.GREATER_THAN_OR_EQUAL: "ge",
    ConstraintOperator.LESS_THAN: "lt",
    ConstraintOperator.LESS_THAN_OR_EQUAL: "le",
}


def quote(text: str) -> str:
    """Single-quote a string literal, doubling embedded quotes."""
    return "'" + text.replace("'", "''") + "'"


def format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%dT00:00:00Z")
    return quote(str(value))


class ODataTranslator:
    """Serializes composed queries into filter strings."""

    def to_filter(self, query: ComposedQuery) -> str:
        groups = [g for g in query.constraint_groups if g.constraints]
        if not groups:
            return ""

        joiner = f" {query.group_operator.value} "
        odata = joiner.join(self.translate_group(g) for g in groups)
        logger.debug("Translated filter", groups=len(groups), filter=odata)
        return odata

    def translate_group(self, group: ConstraintGroup) -> str:
        joiner = f" {group.operator.value} "
        return "(" + joiner.join(self.translate_constraint(c) for c in group.constraints) + ")"

    def translate_constraint(self, constraint: SearchConstraint) -> str:
        field_name = constraint.field_name
        op = constraint.operator
        value = constraint.value

        if op in _COMPARISON_SYNTAX:
            return f"{field_name} {_COMPARISON_SYNTAX[op]} {format_value(value)}"

        if op == ConstraintOperator.BETWEEN:
            low, high = value
            return f"({field_name} ge {format_value(low)} and {field_name} le {format_value(high)})"

        if op == ConstraintOperator.IN:
            values = value if isinstance(value, (list, tuple, set)) else [value]
            return self._membership(field_name, [str(v) for v in values])

        if op == ConstraintOperator.CONTAINS:
            if isinstance(value, (list, tuple, set)):
                parts = [self._match(field_name, str(v)) for v in value]
                return "(" + " or ".join(parts) + ")"
            return self._match(field_name, str(value))

        raise ValueError(f"Unsupported operator: {op}")

    @staticmethod
    def _membership(field_name: str, values: List[str]) -> str:
        delimiter = "|" if any("," in v for v in values) else ","
        return f"search.in({field_name}, {quote(delimiter.join(values))}, {quote(delimiter)})"

    @staticmethod
    def _match(field_name: str, text: str) -> str:
        return f"search.ismatch({quote(text)}, {quote(field_name)})"

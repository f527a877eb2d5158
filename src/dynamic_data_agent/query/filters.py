# src/dynamic_data_agent/query/filters.py
import re
from dataclasses import dataclass, field
from typing import Any

from dynamic_data_agent.core.errors import ValidationError, UnsupportedOperatorError
from dynamic_data_agent.query.identifiers import require_identifier

# Declarative operator -> native comparison primitive of the store (PostgREST naming)
OPERATOR_MAP = {
    "equals": "eq",
    "not_equals": "neq",
    "contains": "ilike",
    "gt": "gt",
    "gte": "gte",
    "lt": "lt",
    "lte": "lte",
    "in": "in",
}

SUPPORTED_OPERATORS = tuple(OPERATOR_MAP.keys())


@dataclass(frozen=True)
class Condition:
    column: str
    op: str
    value: Any

    def apply(self, builder):
        if self.op == "in":
            return builder.in_(self.column, list(self.value))
        return getattr(builder, self.op)(self.column, self.value)

    def matches(self, row: dict) -> bool:
        actual = row.get(self.column)
        if actual is None:
            # SQL semantics: a NULL column never satisfies a comparison
            return False
        if self.op == "eq":
            return _loosely_equal(actual, self.value)
        if self.op == "neq":
            return self.value is not None and not _loosely_equal(actual, self.value)
        if self.op == "ilike":
            return like_to_regex(str(self.value)).fullmatch(_as_text(actual)) is not None
        if self.op == "in":
            return any(_loosely_equal(actual, candidate) for candidate in self.value)
        if self.value is None:
            return False
        ordering = _compare(actual, self.value)
        return {
            "gt": ordering > 0,
            "gte": ordering >= 0,
            "lt": ordering < 0,
            "lte": ordering <= 0,
        }[self.op]


@dataclass(frozen=True)
class CompiledPredicate:
    """
    An AND-only conjunction of validated conditions. No OR, no nesting: every filter list
    compiles to a flat conjunction.
    """
    conditions: tuple = field(default_factory=tuple)

    def and_(self, other: "CompiledPredicate") -> "CompiledPredicate":
        return CompiledPredicate(self.conditions + other.conditions)

    def with_condition(self, condition: Condition) -> "CompiledPredicate":
        return CompiledPredicate(self.conditions + (condition,))

    def apply(self, builder):
        for condition in self.conditions:
            builder = condition.apply(builder)
        return builder

    def matches(self, row: dict) -> bool:
        return all(condition.matches(row) for condition in self.conditions)

    def columns(self) -> list[str]:
        return [c.column for c in self.conditions]

    def __len__(self):
        return len(self.conditions)


def compile_filter(descriptor) -> Condition:
    if not isinstance(descriptor, dict):
        raise ValidationError(f"Malformed filter: expected an object, got {type(descriptor).__name__}")
    if "column" not in descriptor or "operator" not in descriptor:
        raise ValidationError("Malformed filter: 'column' and 'operator' are required")

    column = require_identifier(descriptor["column"], "column name")
    operator = descriptor["operator"]
    if operator not in OPERATOR_MAP:
        raise UnsupportedOperatorError(operator)

    value = descriptor.get("value")
    op = OPERATOR_MAP[operator]

    if op == "in":
        if not isinstance(value, (list, tuple)) or len(value) == 0:
            raise ValidationError(f"Operator 'in' on column '{column}' requires a non-empty array value")
        return Condition(column, op, tuple(value))
    if isinstance(value, (dict, list, tuple)):
        raise ValidationError(f"Operator '{operator}' on column '{column}' requires a scalar value")
    if op == "ilike":
        return Condition(column, op, f"%{'' if value is None else value}%")
    return Condition(column, op, value)


def compile_filters(filters) -> CompiledPredicate:
    """
    Compiles a list of {column, operator, value} descriptors. The whole list is validated
    before anything is returned, so an invalid entry anywhere rejects the request.
    """
    if filters is None:
        return CompiledPredicate()
    if not isinstance(filters, (list, tuple)):
        raise ValidationError("Malformed filters: expected an array of filter objects")
    return CompiledPredicate(tuple(compile_filter(f) for f in filters))


def compile_date_range(date_range) -> CompiledPredicate:
    if not date_range:
        return CompiledPredicate()
    if not isinstance(date_range, dict):
        raise ValidationError("Malformed dateRange: expected an object")
    column = require_identifier(date_range.get("column"), "date range column")
    conditions = []
    if date_range.get("start"):
        conditions.append(Condition(column, "gte", date_range["start"]))
    if date_range.get("end"):
        conditions.append(Condition(column, "lte", date_range["end"]))
    return CompiledPredicate(tuple(conditions))


def like_to_regex(pattern: str) -> re.Pattern:
    """Translates an ILIKE pattern (% and _ wildcards, backslash escapes) to a regex."""
    parts = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def _as_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_float(value):
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _loosely_equal(left, right) -> bool:
    if right is None:
        return False
    if left == right:
        return True
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    # Values from the model arrive as strings ("17") while the column may hold 17
    return _as_text(left) == _as_text(right)


def _compare(left, right) -> int:
    if _is_number(left) or _is_number(right):
        left_num, right_num = _to_float(left), _to_float(right)
        if left_num is not None and right_num is not None:
            return (left_num > right_num) - (left_num < right_num)
    left_text, right_text = _as_text(left), _as_text(right)
    return (left_text > right_text) - (left_text < right_text)

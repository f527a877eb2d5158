# src/dynamic_data_agent/query/aggregation.py
"""
In-memory aggregation over the owner's filtered row-set.

The whole filtered row-set is fetched and reduced in application memory; nothing is pushed
down to the store. Memory use therefore grows with the owner's data volume for the table.
"""
import json
import logging
import math
import re

from dynamic_data_agent.core.errors import ValidationError
from dynamic_data_agent.query.filters import compile_date_range, compile_filters
from dynamic_data_agent.query.identifiers import require_identifier
from dynamic_data_agent.query.store import DataScope, TableQuery

app_logger = logging.getLogger("quart.app")

AGGREGATION_TYPES = ("count", "sum", "avg", "min", "max")

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def to_number(value) -> float:
    """
    Best-effort numeric parse of a cell. Reads the leading number of a string ("12.5kg" is
    12.5, "Infinity" is inf) and treats anything unparseable, missing or boolean as 0. The
    coercion is lossy on dirty data: a non-numeric cell still counts as a row contributing 0.
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return 0.0 if math.isnan(value) else float(value)
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        return float(match.group(0)) if match else 0.0
    return 0.0


def _is_blank(value) -> bool:
    # Missing, empty, false, zero and NaN all share the "null" group
    if value is None or value is False or value == "":
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0 or math.isnan(value)
    return False


def group_key(value) -> str:
    if _is_blank(value):
        return "null"
    if value is True:
        return "true"
    if isinstance(value, float) and math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _clean(number):
    # JSON has no infinity or NaN
    if isinstance(number, float) and not math.isfinite(number):
        return None
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _total(values: list[float]) -> float:
    try:
        return math.fsum(values)
    except (ValueError, OverflowError):
        # fsum rejects inf + -inf and overflowing partials; plain addition yields nan or inf
        return sum(values)


def reduce_values(agg_type: str, values: list[float]):
    if agg_type == "count":
        return len(values)
    if not values:
        return 0
    if agg_type == "sum":
        return _clean(_total(values))
    if agg_type == "avg":
        return _clean(_total(values) / len(values))
    if agg_type == "min":
        return _clean(min(values))
    return _clean(max(values))


def parse_aggregation(aggregation) -> tuple[str, str, str | None]:
    if not isinstance(aggregation, dict):
        raise ValidationError("Malformed aggregation: expected an object with 'type' and 'column'")
    agg_type = aggregation.get("type")
    if agg_type not in AGGREGATION_TYPES:
        raise ValidationError(f"Unsupported aggregation type: {agg_type}")
    # column is required even for count, which ignores its values
    column = require_identifier(aggregation.get("column"), "aggregation column")
    group_by = aggregation.get("groupBy")
    if group_by is not None:
        group_by = require_identifier(group_by, "groupBy column")
    return agg_type, column, group_by


def compute_aggregate(rows: list[dict], agg_type: str, column: str, group_by: str | None = None) -> list[dict]:
    if not group_by:
        values = [to_number(row.get(column)) for row in rows]
        return [{agg_type: reduce_values(agg_type, values)}]

    # dict preserves first-appearance order of group keys
    groups: dict[str, list[float]] = {}
    for row in rows:
        groups.setdefault(group_key(row.get(group_by)), []).append(to_number(row.get(column)))

    return [{group_by: key, agg_type: reduce_values(agg_type, values)} for key, values in groups.items()]


async def aggregate(scope: DataScope, table, aggregation, filters=None, date_range=None) -> dict:
    app_logger.info(f"Analytics query request: {json.dumps({'table': table, 'aggregation': aggregation, 'filters': filters, 'dateRange': date_range}, default=str)}")

    table = require_identifier(table, "table name")
    agg_type, column, group_by = parse_aggregation(aggregation)
    predicate = scope.owner_predicate().and_(compile_filters(filters)).and_(compile_date_range(date_range))

    rows = await scope.store.fetch(TableQuery(table=table, predicate=predicate))
    results = compute_aggregate(rows, agg_type, column, group_by)

    app_logger.info(f"Analytics executed successfully. Returned {len(results)} result groups from {len(rows)} rows")
    return {
        "success": True,
        "results": results,
        "aggregation": agg_type,
        "groupedBy": group_by,
        "rows_scanned": len(rows),
    }

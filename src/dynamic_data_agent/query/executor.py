# src/dynamic_data_agent/query/executor.py
import json
import logging

from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.core.errors import ValidationError
from dynamic_data_agent.query.filters import compile_filters
from dynamic_data_agent.query.identifiers import require_identifier
from dynamic_data_agent.query.store import DataScope, SortSpec, TableQuery

app_logger = logging.getLogger("quart.app")


def normalize_select(select) -> str:
    if select is None:
        return "*"
    if not isinstance(select, (list, tuple)):
        raise ValidationError("Malformed select: expected an array of column names")
    if len(select) == 0 or list(select) == ["*"]:
        return "*"
    return ",".join(require_identifier(column, "column name") for column in select)


def normalize_sort(sort) -> SortSpec | None:
    """
    Accepts {column, direction} and, for compatibility with older tool catalogues,
    {column, order}. A missing direction sorts ascending.
    """
    if sort is None:
        return None
    if not isinstance(sort, dict):
        raise ValidationError("Malformed sort: expected an object")
    column = require_identifier(sort.get("column"), "sort column")
    direction = sort.get("direction") or sort.get("order") or "asc"
    if not isinstance(direction, str) or direction.lower() not in ("asc", "desc"):
        raise ValidationError(f"Invalid sort direction: {direction}")
    return SortSpec(column=column, descending=direction.lower() == "desc")


def normalize_count(value, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"Invalid {name}: {value}")
    return value


def build_table_query(scope: DataScope, table, select=None, filters=None, sort=None, limit=None, offset=None) -> TableQuery:
    """
    Validates every identifier and shape of the request and returns the store query. The
    owner condition is the first conjunct and cannot be displaced by caller filters.
    """
    table = require_identifier(table, "table name")
    columns = normalize_select(select)
    predicate = scope.owner_predicate().and_(compile_filters(filters))
    sort_spec = normalize_sort(sort)
    limit = normalize_count(limit, "limit")
    offset = normalize_count(offset, "offset")
    if offset is not None and limit is None:
        limit = APP_CONFIG.DEFAULT_PAGE_SIZE
    return TableQuery(table=table, predicate=predicate, columns=columns, sort=sort_spec, limit=limit, offset=offset)


async def execute_query(scope: DataScope, table, select=None, filters=None, sort=None, limit=None, offset=None) -> dict:
    app_logger.info(f"Query builder request: {json.dumps({'table': table, 'select': select, 'filters': filters, 'sort': sort, 'limit': limit, 'offset': offset}, default=str)}")

    query = build_table_query(scope, table, select, filters, sort, limit, offset)
    rows = await scope.store.fetch(query)

    app_logger.info(f"Query executed successfully. Returned {len(rows)} records")
    return {
        "success": True,
        "data": rows,
        "count": len(rows),
        "query": {
            "table": query.table,
            "filters": list(filters or []),
            "sort": {"column": query.sort.column, "direction": "desc" if query.sort.descending else "asc"} if query.sort else None,
            "sorted": query.sort is not None,
            "limit": query.limit,
            "offset": query.offset,
        },
    }

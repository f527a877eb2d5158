# src/dynamic_data_agent/query/relationships.py
"""
Pre-scripted multi-hop lookups. The store has no foreign keys, so every "join" is a chain
of owner-scoped single-table queries: resolve a human name to ids, filter the dependent
table with `in`, then enrich the rows in memory. Ids are resolved on every call.
"""
import logging

from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.core.errors import ValidationError
from dynamic_data_agent.query.executor import execute_query
from dynamic_data_agent.query.store import DataScope

app_logger = logging.getLogger("quart.app")


async def resolve_lookup(scope: DataScope, table: str, name: str, exact: bool = True, name_column: str = "name") -> list[dict]:
    """
    Case-insensitive name resolution against a lookup table. With exact=False any row whose
    name contains the term matches.
    """
    name = str(name).strip()
    if not name:
        return []
    result = await execute_query(
        scope, table,
        filters=[{"column": name_column, "operator": "contains", "value": name}],
    )
    rows = result["data"]
    if exact:
        needle = name.lower()
        rows = [row for row in rows if str(row.get(name_column) or "").strip().lower() == needle]
    app_logger.info(f"Resolved '{name}' in {table} to {len(rows)} row(s)")
    return rows


def not_found(kind: str, name: str) -> dict:
    return {"success": False, "error": f'{kind} "{name}" not found', "count": 0, "data": []}


def _ids(rows: list[dict]) -> list:
    seen = []
    for row in rows:
        value = row.get("id")
        if value is not None and value not in seen:
            seen.append(value)
    return seen


def _names_by_id(rows: list[dict]) -> dict:
    return {str(row.get("id")): row.get("name") for row in rows}


async def _rows_with_lookup(scope, table, fk_column, lookup_rows, enrich_as, limit, extra_filters=None) -> list[dict]:
    filters = [{"column": fk_column, "operator": "in", "value": _ids(lookup_rows)}] + list(extra_filters or [])
    result = await execute_query(scope, table, filters=filters, limit=limit)
    names = _names_by_id(lookup_rows)
    return [{**row, enrich_as: names.get(str(row.get(fk_column)))} for row in result["data"]]


async def get_entities_by_type(scope: DataScope, type_name: str, limit: int = None) -> dict:
    limit = limit or APP_CONFIG.SPECIALIZED_QUERY_LIMIT
    if not type_name:
        raise ValidationError("type_name is required")
    app_logger.info(f"Getting entities by type: {type_name}")

    entity_types = await resolve_lookup(scope, "entity_types", type_name)
    if not entity_types:
        return not_found("Entity type", type_name)

    entities = await _rows_with_lookup(scope, "entities", "auditable_entity_type_id", entity_types, "entity_type_name", limit)
    app_logger.info(f"Found {len(entities)} entities")
    return {
        "success": True,
        "entity_type": entity_types[0].get("name"),
        "entity_type_ids": _ids(entity_types),
        "count": len(entities),
        "data": entities,
    }


async def get_risks_by_category(scope: DataScope, category_name: str, limit: int = None) -> dict:
    limit = limit or APP_CONFIG.SPECIALIZED_QUERY_LIMIT
    if not category_name:
        raise ValidationError("category_name is required")
    app_logger.info(f"Getting risks by category: {category_name}")

    categories = await resolve_lookup(scope, "risk_categories", category_name)
    if not categories:
        return not_found("Risk category", category_name)

    risks = await _rows_with_lookup(scope, "risks", "risk_category_id", categories, "category_name", limit)
    app_logger.info(f"Found {len(risks)} risks")
    return {
        "success": True,
        "risk_category": categories[0].get("name"),
        "risk_category_ids": _ids(categories),
        "count": len(risks),
        "data": risks,
    }


async def get_assessments_by_filter(scope: DataScope, type_filter: str = None, period_name: str = None, limit: int = None) -> dict:
    limit = limit or APP_CONFIG.SPECIALIZED_QUERY_LIMIT
    app_logger.info(f"Getting assessments - type: {type_filter}, period: {period_name}")

    type_filters = [{"column": "type", "operator": "equals", "value": type_filter}] if type_filter else []
    periods = []
    if period_name:
        periods = await resolve_lookup(scope, "assessment_periods", period_name, exact=False)
        if not periods:
            return not_found("Assessment period", period_name)
        assessments = await _rows_with_lookup(scope, "assessments", "assessment_period_id", periods, "period_name", limit, type_filters)
    else:
        assessments = (await execute_query(scope, "assessments", filters=type_filters, limit=limit))["data"]

    app_logger.info(f"Found {len(assessments)} assessments")
    return {
        "success": True,
        "filters_applied": {
            "type": type_filter or "all",
            "period": period_name or "all",
            "period_ids": _ids(periods),
        },
        "count": len(assessments),
        "data": assessments,
    }


async def get_entities_with_risks(scope: DataScope, entity_type_name: str = None, limit: int = None) -> dict:
    limit = limit or APP_CONFIG.SPECIALIZED_QUERY_LIMIT
    app_logger.info(f"Getting entities with risks - type filter: {entity_type_name or 'all'}")

    entity_filters = []
    if entity_type_name:
        entity_types = await resolve_lookup(scope, "entity_types", entity_type_name)
        if not entity_types:
            return not_found("Entity type", entity_type_name)
        entity_filters.append({"column": "auditable_entity_type_id", "operator": "in", "value": _ids(entity_types)})

    entities = (await execute_query(scope, "entities", filters=entity_filters, limit=limit))["data"]
    if not entities:
        return {"success": True, "entity_type_filter": entity_type_name or "all", "count": 0, "total_risks": 0, "data": []}

    links = (await execute_query(
        scope, "entity_risks",
        filters=[{"column": "entity_id", "operator": "in", "value": _ids(entities)}],
    ))["data"]
    app_logger.info(f"Found {len(links)} entity-risk relationships")

    risk_ids = []
    for link in links:
        if link.get("risk_id") is not None and link["risk_id"] not in risk_ids:
            risk_ids.append(link["risk_id"])

    risks = []
    if risk_ids:
        risks = (await execute_query(
            scope, "risks",
            filters=[{"column": "id", "operator": "in", "value": risk_ids}],
        ))["data"]
    risks_by_id = {str(risk.get("id")): risk for risk in risks}

    enriched = []
    for entity in entities:
        associated = []
        for link in links:
            if str(link.get("entity_id")) != str(entity.get("id")):
                continue
            risk = risks_by_id.get(str(link.get("risk_id")))
            if risk is None:
                continue
            associated.append({
                "entity_risk_id": link.get("id"),
                "entity_risk_status": link.get("status"),
                "risk": risk,
            })
        enriched.append({**entity, "associated_risks": associated, "risk_count": len(associated)})

    return {
        "success": True,
        "entity_type_filter": entity_type_name or "all",
        "count": len(enriched),
        "total_risks": len(risks),
        "data": enriched,
    }

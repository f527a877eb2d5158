# src/dynamic_data_agent/tools/catalogue.py
from dynamic_data_agent.query.aggregation import AGGREGATION_TYPES
from dynamic_data_agent.query.filters import SUPPORTED_OPERATORS

FILTERS_SCHEMA = {
    "type": "array",
    "description": "Filters to apply. All filters are combined with AND.",
    "items": {
        "type": "object",
        "properties": {
            "column": {"type": "string"},
            "operator": {"type": "string", "enum": list(SUPPORTED_OPERATORS)},
            "value": {"description": "Value to compare against. Use an array of values with the 'in' operator."},
        },
        "required": ["column", "operator", "value"],
    },
}

QUERY_DATA_TOOL = {
    "type": "function",
    "function": {
        "name": "query_data",
        "description": "Query data from user tables. Use this to fetch specific data based on filters, sorting, and pagination.",
        "parameters": {
            "type": "object",
            "properties": {
                "table": {"type": "string", "description": "The name of the table to query"},
                "select": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": 'Columns to select. Use ["*"] for all columns.',
                },
                "filters": FILTERS_SCHEMA,
                "sort": {
                    "type": "object",
                    "properties": {
                        "column": {"type": "string"},
                        "direction": {"type": "string", "enum": ["asc", "desc"]},
                    },
                    "description": "Sort order for results",
                },
                "limit": {"type": "number", "description": "Maximum number of records to return"},
                "offset": {"type": "number", "description": "Number of records to skip (pagination)"},
            },
            "required": ["table"],
        },
    },
}

AGGREGATE_DATA_TOOL = {
    "type": "function",
    "function": {
        "name": "aggregate_data",
        "description": "Perform aggregations on data like COUNT, SUM, AVG, MIN, MAX with optional grouping.",
        "parameters": {
            "type": "object",
            "properties": {
                "table": {"type": "string", "description": "The name of the table to aggregate"},
                "aggregation": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": list(AGGREGATION_TYPES)},
                        "column": {"type": "string"},
                        "groupBy": {"type": "string"},
                    },
                    "required": ["type", "column"],
                },
                "filters": FILTERS_SCHEMA,
                "dateRange": {
                    "type": "object",
                    "properties": {
                        "column": {"type": "string"},
                        "start": {"type": "string"},
                        "end": {"type": "string"},
                    },
                    "description": "Optional inclusive date range on a date column (ISO strings)",
                },
            },
            "required": ["table", "aggregation"],
        },
    },
}

SPECIALIZED_TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "get_entities_by_type",
            "description": "Get all entities of a specific type (e.g., Products, Applications, Vendors). Use this INSTEAD of querying entity_types and entities separately.",
            "parameters": {
                "type": "object",
                "properties": {
                    "type_name": {"type": "string", "description": 'The entity type name (case-insensitive, e.g., "Product", "Application", "Vendor")'},
                    "limit": {"type": "number", "description": "Maximum number of records to return (default: 100)"},
                },
                "required": ["type_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_risks_by_category",
            "description": "Get all risks in a specific category (e.g., Operational, Financial, Compliance). Use this INSTEAD of querying risk_categories and risks separately.",
            "parameters": {
                "type": "object",
                "properties": {
                    "category_name": {"type": "string", "description": 'The risk category name (case-insensitive, e.g., "Operational", "Financial")'},
                    "limit": {"type": "number", "description": "Maximum number of records to return (default: 100)"},
                },
                "required": ["category_name"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_assessments_by_filter",
            "description": "Get assessments filtered by type and/or period name. Use this INSTEAD of multiple lookups for assessment filtering. Both parameters are optional.",
            "parameters": {
                "type": "object",
                "properties": {
                    "type_filter": {"type": "string", "description": 'Assessment type to filter by (e.g., "Risk", "EntityRisk", "RiskControl").'},
                    "period_name": {"type": "string", "description": 'Assessment period name to search for (e.g., "2020", "Q1 2021"). Case-insensitive partial match.'},
                    "limit": {"type": "number", "description": "Maximum number of records to return (default: 100)"},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_entities_with_risks",
            "description": "Get entities with their associated risks in a single call. Returns enriched entity data with nested risk information.",
            "parameters": {
                "type": "object",
                "properties": {
                    "entity_type_name": {"type": "string", "description": "Filter by entity type name (optional, case-insensitive)"},
                    "limit": {"type": "number", "description": "Maximum number of entities to return (default: 100)"},
                },
            },
        },
    },
]

BUILTIN_TOOLS = [QUERY_DATA_TOOL, AGGREGATE_DATA_TOOL] + SPECIALIZED_TOOLS


def tool_name(tool: dict) -> str | None:
    return (tool.get("function") or {}).get("name")


def build_catalogue(custom_tools: list[dict] | None = None) -> list[dict]:
    """Built-in tools first; a custom tool never shadows a built-in name."""
    catalogue = list(BUILTIN_TOOLS)
    builtin_names = {tool_name(t) for t in BUILTIN_TOOLS}
    for tool in custom_tools or []:
        if tool_name(tool) and tool_name(tool) not in builtin_names:
            catalogue.append(tool)
    return catalogue


def render_tools_context(catalogue: list[dict]) -> str:
    """Plain-text listing of the tools and their arguments, for prompts and the UI."""
    if not catalogue:
        return "--- No Tools Available ---"

    parts = ["--- Available Tools ---"]
    for tool in catalogue:
        function = tool.get("function", {})
        tool_str = f"- `{function.get('name')}`: {function.get('description', 'No description.')}"
        parameters = function.get("parameters") or {}
        properties = parameters.get("properties") or {}
        required = set(parameters.get("required") or [])
        if properties:
            tool_str += "\n  - Arguments:"
            for arg_name, arg_details in properties.items():
                arg_type = arg_details.get("type", "any")
                req_str = "required" if arg_name in required else "optional"
                arg_desc = arg_details.get("description", "No description.")
                tool_str += f"\n    - `{arg_name}` ({arg_type}, {req_str}): {arg_desc}"
        parts.append(tool_str)
    return "\n".join(parts)

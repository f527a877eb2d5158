# src/dynamic_data_agent/tools/custom.py
"""
User-defined tools. Their definitions live in the owner's `custom_tools` table and their
code runs behind the `execute-custom-tool` edge function; this module only loads the
definitions, checks arguments against the stored schema and relays the call. What a
custom tool touches is bounded by the store's row-level security, not by this module.
"""
import logging

from dynamic_data_agent.core.errors import QueryExecutionError
from dynamic_data_agent.query.executor import execute_query
from dynamic_data_agent.query.store import DataScope

app_logger = logging.getLogger("quart.app")

CUSTOM_TOOLS_TABLE = "custom_tools"
EXECUTE_FUNCTION = "execute-custom-tool"

_JSON_TYPES = {
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "string": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


def validate_tool_arguments(arguments: dict, tool_schema: dict | None) -> list[str]:
    """Returns a list of human-readable problems; empty when the arguments fit the schema."""
    errors = []
    schema = ((tool_schema or {}).get("function") or {}).get("parameters")
    if not schema:
        return errors

    properties = schema.get("properties") or {}
    for param in schema.get("required") or []:
        if arguments.get(param) in (None, ""):
            errors.append(f"Required parameter '{param}' is missing")

    for key, value in arguments.items():
        prop_schema = properties.get(key)
        if prop_schema is None:
            errors.append(f"Unknown parameter '{key}'")
            continue
        check = _JSON_TYPES.get(prop_schema.get("type"))
        if check and value is not None and not check(value):
            errors.append(f"Parameter '{key}' should be a {prop_schema.get('type')}")
    return errors


class CustomToolRegistry:
    """The owner's active custom tools, loaded once per request."""
    def __init__(self, scope: DataScope, tools: dict[str, dict] | None = None):
        self.scope = scope
        self.tools = tools or {}

    @classmethod
    async def load(cls, scope: DataScope) -> "CustomToolRegistry":
        try:
            result = await execute_query(
                scope, CUSTOM_TOOLS_TABLE,
                select=["name", "description", "tool_schema"],
                filters=[{"column": "status", "operator": "equals", "value": "active"}],
            )
        except QueryExecutionError as e:
            app_logger.warning(f"Custom tools unavailable, continuing with built-in tools only: {e}")
            return cls(scope)

        tools = {}
        for row in result["data"]:
            schema = row.get("tool_schema")
            if row.get("name") and isinstance(schema, dict):
                tools[row["name"]] = schema
        app_logger.info(f"Loaded {len(tools)} custom tools for user")
        return cls(scope, tools)

    def schemas(self) -> list[dict]:
        return list(self.tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self.tools

    async def invoke(self, name: str, arguments: dict) -> dict:
        validation_errors = validate_tool_arguments(arguments, self.tools.get(name))
        if validation_errors:
            return {"success": False, "error": "Parameter validation failed", "validation_errors": validation_errors}

        app_logger.info(f"Executing custom tool: {name}")
        result = await self.scope.store.invoke_function(EXECUTE_FUNCTION, {"tool_name": name, "args": arguments})

        if isinstance(result, list):
            return {"success": True, "count": len(result), "data": result}
        if not isinstance(result, dict):
            return {"success": False, "error": f"Custom tool '{name}' returned an unexpected result"}
        return result

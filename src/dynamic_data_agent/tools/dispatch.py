# src/dynamic_data_agent/tools/dispatch.py
import json
import logging

from dynamic_data_agent.core.errors import AgentError, ToolDispatchError
from dynamic_data_agent.llm.handler import ToolCall
from dynamic_data_agent.query import relationships
from dynamic_data_agent.query.aggregation import aggregate
from dynamic_data_agent.query.executor import execute_query
from dynamic_data_agent.query.store import DataScope
from dynamic_data_agent.tools.catalogue import build_catalogue
from dynamic_data_agent.tools.custom import CustomToolRegistry

app_logger = logging.getLogger("quart.app")

TOOL_NOT_FOUND = "tool not found"


async def _query_data(scope: DataScope, args: dict) -> dict:
    return await execute_query(
        scope, args.get("table"),
        select=args.get("select"), filters=args.get("filters"), sort=args.get("sort"),
        limit=args.get("limit"), offset=args.get("offset"),
    )


async def _aggregate_data(scope: DataScope, args: dict) -> dict:
    return await aggregate(
        scope, args.get("table"), args.get("aggregation"),
        filters=args.get("filters"), date_range=args.get("dateRange"),
    )


async def _entities_by_type(scope: DataScope, args: dict) -> dict:
    return await relationships.get_entities_by_type(scope, args.get("type_name"), limit=args.get("limit"))


async def _risks_by_category(scope: DataScope, args: dict) -> dict:
    return await relationships.get_risks_by_category(scope, args.get("category_name"), limit=args.get("limit"))


async def _assessments_by_filter(scope: DataScope, args: dict) -> dict:
    return await relationships.get_assessments_by_filter(
        scope, type_filter=args.get("type_filter"), period_name=args.get("period_name"), limit=args.get("limit"),
    )


async def _entities_with_risks(scope: DataScope, args: dict) -> dict:
    return await relationships.get_entities_with_risks(scope, entity_type_name=args.get("entity_type_name"), limit=args.get("limit"))


BUILTIN_HANDLERS = {
    "query_data": _query_data,
    "aggregate_data": _aggregate_data,
    "get_entities_by_type": _entities_by_type,
    "get_risks_by_category": _risks_by_category,
    "get_assessments_by_filter": _assessments_by_filter,
    "get_entities_with_risks": _entities_with_risks,
}


def parse_arguments(raw) -> dict:
    """Model-supplied arguments are untrusted: they must decode to a JSON object."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ToolDispatchError(f"Invalid JSON arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ToolDispatchError("Tool arguments must be a JSON object")
    return parsed


class ToolDispatcher:
    """
    Maps a tool name to its handler. Failures of any kind come back as an {"error": ...}
    result so the conversation can carry on and the model can try something else.
    """
    def __init__(self, scope: DataScope, custom_tools: CustomToolRegistry | None = None):
        self.scope = scope
        self.custom_tools = custom_tools or CustomToolRegistry(scope)

    def catalogue(self) -> list[dict]:
        return build_catalogue(self.custom_tools.schemas())

    def _resolve(self, name: str):
        handler = BUILTIN_HANDLERS.get(name)
        if handler is not None:
            return lambda args: handler(self.scope, args)
        if name in self.custom_tools:
            return lambda args: self.custom_tools.invoke(name, args)
        raise ToolDispatchError(TOOL_NOT_FOUND, tool_name=name)

    async def execute(self, name: str, arguments) -> dict:
        """Runs one tool and lets its errors propagate; used where the caller maps them itself."""
        handler = self._resolve(name)
        return await handler(parse_arguments(arguments))

    async def dispatch(self, name: str, arguments) -> dict:
        app_logger.info(f"Executing tool: {name}")
        try:
            result = await self.execute(name, arguments)
        except ToolDispatchError as e:
            app_logger.warning(f"Tool dispatch failed for '{name}': {e}")
            return {"error": str(e), "tool": name}
        except AgentError as e:
            app_logger.warning(f"Tool '{name}' rejected the request: {e}")
            return {"error": str(e), "tool": name}
        except Exception as e:
            app_logger.error(f"Tool '{name}' raised an unexpected error: {e}", exc_info=True)
            return {"error": str(e) or type(e).__name__, "tool": name}

        app_logger.debug(f"Tool result for {name}: {json.dumps(result, default=str)}")
        return result

    async def dispatch_call(self, call: ToolCall) -> dict:
        return await self.dispatch(call.name, call.arguments)

from __future__ import annotations

import json

import pytest

from conftest import WEATHER_TOOL
from dynamic_data_agent.core.errors import ToolDispatchError
from dynamic_data_agent.llm.handler import ToolCall
from dynamic_data_agent.query.store import DataScope, MemoryStore
from dynamic_data_agent.tools.catalogue import BUILTIN_TOOLS, build_catalogue, render_tools_context, tool_name
from dynamic_data_agent.tools.custom import CustomToolRegistry, validate_tool_arguments
from dynamic_data_agent.tools.dispatch import ToolDispatcher, parse_arguments


def test_unknown_tool_comes_back_as_an_error_result(run, scope):
    result = run(ToolDispatcher(scope).dispatch("drop_everything", {}))
    assert result == {"error": "tool not found", "tool": "drop_everything"}


def test_malformed_json_arguments_are_a_tool_error(run, scope, store):
    call = ToolCall(id="call_1", name="query_data", arguments='{"table": "risks"')
    result = run(ToolDispatcher(scope).dispatch_call(call))
    assert result["error"].startswith("Invalid JSON arguments")
    assert store.queries == []


def test_non_object_arguments_are_rejected():
    with pytest.raises(ToolDispatchError, match="must be a JSON object"):
        parse_arguments("[1, 2]")
    assert parse_arguments("") == {}
    assert parse_arguments(None) == {}
    assert parse_arguments({"table": "risks"}) == {"table": "risks"}


def test_validation_errors_are_folded_into_the_result(run, scope, store):
    result = run(ToolDispatcher(scope).dispatch("query_data", json.dumps({"table": "Risks"})))
    assert result == {"error": "Invalid table name: Risks", "tool": "query_data"}
    assert store.queries == []


def test_store_errors_are_folded_into_the_result(run, scope):
    result = run(ToolDispatcher(scope).dispatch("query_data", {"table": "missing_table"}))
    assert "does not exist" in result["error"]


def test_query_data_runs_through_the_executor(run, scope):
    arguments = json.dumps({
        "table": "assessments",
        "filters": [{"column": "status", "operator": "equals", "value": "Active"}],
        "select": ["id"],
    })
    result = run(ToolDispatcher(scope).dispatch("query_data", arguments))
    assert result["data"] == [{"id": 1}, {"id": 4}]


def test_aggregate_data_accepts_date_range(run, scope):
    arguments = {
        "table": "orders",
        "aggregation": {"type": "count", "column": "id"},
        "dateRange": {"column": "created_at", "start": "2024-02-01"},
    }
    result = run(ToolDispatcher(scope).dispatch("aggregate_data", arguments))
    assert result["results"] == [{"count": 2}]


def test_specialized_tool_is_dispatched(run, scope):
    result = run(ToolDispatcher(scope).dispatch("get_risks_by_category", '{"category_name": "Financial"}'))
    assert [row["name"] for row in result["data"]] == ["Fraud"]


def test_execute_propagates_errors(run, scope):
    with pytest.raises(ToolDispatchError):
        run(ToolDispatcher(scope).execute("nope", {}))


def test_only_active_custom_tools_are_loaded(run, scope):
    registry = run(CustomToolRegistry.load(scope))
    assert "lookup_weather" in registry
    assert "retired_tool" not in registry
    assert registry.schemas() == [WEATHER_TOOL]


def test_custom_tools_are_invoked_through_the_edge_function(run, scope, store):
    dispatcher = ToolDispatcher(scope, run(CustomToolRegistry.load(scope)))
    result = run(dispatcher.dispatch("lookup_weather", {"city": "Oslo"}))
    assert result == {"success": True, "count": 1, "data": [{"city": "Oslo", "temp_c": 21}]}
    assert store.function_calls == [("execute-custom-tool", {"tool_name": "lookup_weather", "args": {"city": "Oslo"}})]


def test_custom_tool_arguments_are_validated_before_invocation(run, scope, store):
    dispatcher = ToolDispatcher(scope, run(CustomToolRegistry.load(scope)))
    result = run(dispatcher.dispatch("lookup_weather", {"days": "three", "units": "metric"}))
    assert result["success"] is False
    assert result["validation_errors"] == [
        "Required parameter 'city' is missing",
        "Parameter 'days' should be a integer",
        "Unknown parameter 'units'",
    ]
    assert store.function_calls == []


def test_validate_tool_arguments_without_schema_accepts_anything():
    assert validate_tool_arguments({"anything": 1}, None) == []
    assert validate_tool_arguments({"days": True}, WEATHER_TOOL) == [
        "Required parameter 'city' is missing",
        "Parameter 'days' should be a integer",
    ]


def test_missing_custom_tools_table_leaves_builtins_only(run):
    scope = DataScope(store=MemoryStore({}), owner_id="u")
    registry = run(CustomToolRegistry.load(scope))
    assert registry.schemas() == []
    assert ToolDispatcher(scope, registry).catalogue() == BUILTIN_TOOLS


def test_custom_tools_cannot_shadow_builtins():
    impostor = {"type": "function", "function": {"name": "query_data", "parameters": {}}}
    names = [tool_name(tool) for tool in build_catalogue([impostor, WEATHER_TOOL])]
    assert names.count("query_data") == 1
    assert names[-1] == "lookup_weather"


def test_render_tools_context_lists_arguments():
    text = render_tools_context(build_catalogue([WEATHER_TOOL]))
    assert text.startswith("--- Available Tools ---")
    assert "- `query_data`:" in text
    assert "`city` (string, required)" in text
    assert render_tools_context([]) == "--- No Tools Available ---"

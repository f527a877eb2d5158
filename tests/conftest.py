from __future__ import annotations

import asyncio
from typing import Any

import pytest

from dynamic_data_agent.core import session_manager
from dynamic_data_agent.llm.handler import ChatModel, ModelReply, ToolCall
from dynamic_data_agent.query.store import DataScope, MemoryConnector, MemoryStore

OWNER = "user-1"
OTHER_OWNER = "user-2"
TOKENS = {"token-1": OWNER, "token-2": OTHER_OWNER}

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "lookup_weather",
        "description": "Current weather for a city.",
        "parameters": {
            "type": "object",
            "properties": {
                "city": {"type": "string"},
                "days": {"type": "integer"},
            },
            "required": ["city"],
        },
    },
}


def seed_tables() -> dict[str, list[dict[str, Any]]]:
    return {
        "assessments": [
            {"id": 1, "user_id": OWNER, "name": "Annual risk review", "status": "Active", "type": "Risk", "assessment_period_id": 17},
            {"id": 2, "user_id": OWNER, "name": "Vendor review", "status": "Draft", "type": "EntityRisk", "assessment_period_id": 18},
            {"id": 3, "user_id": OTHER_OWNER, "name": "Foreign review", "status": "Active", "type": "Risk", "assessment_period_id": 30},
            {"id": 4, "user_id": OWNER, "name": "Controls", "status": "Active", "type": "RiskControl", "assessment_period_id": None},
        ],
        "assessment_periods": [
            {"id": 17, "user_id": OWNER, "name": "2020", "sort_order": 1},
            {"id": 18, "user_id": OWNER, "name": "Q1 2021", "sort_order": 2},
            {"id": 30, "user_id": OTHER_OWNER, "name": "2020", "sort_order": 1},
        ],
        "entity_types": [
            {"id": 1, "user_id": OWNER, "name": "Product"},
            {"id": 2, "user_id": OWNER, "name": "Vendor"},
            {"id": 3, "user_id": OWNER, "name": "Product Line"},
            {"id": 9, "user_id": OTHER_OWNER, "name": "Product"},
        ],
        "entities": [
            {"id": 101, "user_id": OWNER, "name": "Widget", "auditable_entity_type_id": 1},
            {"id": 102, "user_id": OWNER, "name": "Gadget", "auditable_entity_type_id": 1},
            {"id": 103, "user_id": OWNER, "name": "Acme Supplies", "auditable_entity_type_id": 2},
            {"id": 104, "user_id": OWNER, "name": "Line X", "auditable_entity_type_id": 3},
            {"id": 201, "user_id": OTHER_OWNER, "name": "Other Widget", "auditable_entity_type_id": 9},
        ],
        "risk_categories": [
            {"id": 5, "user_id": OWNER, "name": "Operational"},
            {"id": 6, "user_id": OWNER, "name": "Financial"},
            {"id": 7, "user_id": OTHER_OWNER, "name": "Operational"},
        ],
        "risks": [
            {"id": 11, "user_id": OWNER, "name": "Outage", "risk_category_id": 5},
            {"id": 12, "user_id": OWNER, "name": "Fraud", "risk_category_id": 6},
            {"id": 13, "user_id": OWNER, "name": "Staffing", "risk_category_id": 5},
            {"id": 14, "user_id": OTHER_OWNER, "name": "Theirs", "risk_category_id": 7},
        ],
        "entity_risks": [
            {"id": 1001, "user_id": OWNER, "entity_id": 101, "risk_id": 11, "status": "Open"},
            {"id": 1002, "user_id": OWNER, "entity_id": 101, "risk_id": 12, "status": "Closed"},
            {"id": 1003, "user_id": OWNER, "entity_id": 103, "risk_id": 13, "status": "Open"},
        ],
        "orders": [
            {"id": 1, "user_id": OWNER, "x": "5", "region": "north", "created_at": "2024-01-05"},
            {"id": 2, "user_id": OWNER, "x": "abc", "region": None, "created_at": "2024-02-10"},
            {"id": 3, "user_id": OWNER, "x": 10, "region": "north", "created_at": "2024-03-15"},
            {"id": 4, "user_id": OTHER_OWNER, "x": 100, "region": "north", "created_at": "2024-01-20"},
        ],
        "custom_tools": [
            {"id": 1, "user_id": OWNER, "name": "lookup_weather", "description": "Weather", "status": "active", "tool_schema": WEATHER_TOOL},
            {"id": 2, "user_id": OWNER, "name": "retired_tool", "description": "Old", "status": "inactive", "tool_schema": {
                "type": "function", "function": {"name": "retired_tool", "parameters": {"type": "object", "properties": {}}},
            }},
        ],
    }


def execute_custom_tool(body: dict):
    return [{"city": body["args"]["city"], "temp_c": 21}]


def schema_registry(_body: dict):
    return {"tables": [{"table_name": "orders", "columns": ["id", "x", "region", "created_at"]}]}


class ScriptedChatModel(ChatModel):
    """Replays canned replies in order; the last one repeats forever."""
    provider = "Fake"

    def __init__(self, replies: list) -> None:
        super().__init__("fake-model", max_retries=1, base_delay=0)
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def _create(self, messages, tools):
        self.calls.append({"messages": messages, "tools": tools})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def tool_reply(*calls: tuple[str, str, str], content: str | None = None) -> ModelReply:
    return ModelReply(content=content, tool_calls=[ToolCall(id=i, name=n, arguments=a) for i, n, a in calls], input_tokens=10, output_tokens=5)


def answer(content: str) -> ModelReply:
    return ModelReply(content=content, tool_calls=[], input_tokens=7, output_tokens=3)


@pytest.fixture(autouse=True)
def _reset_sessions():
    session_manager.clear_sessions()
    yield
    session_manager.clear_sessions()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(
        seed_tables(),
        functions={"execute-custom-tool": execute_custom_tool, "get-schema-registry": schema_registry},
    )


@pytest.fixture
def scope(store) -> DataScope:
    return DataScope(store=store, owner_id=OWNER, access_token="token-1")


@pytest.fixture
def other_scope(store) -> DataScope:
    return DataScope(store=store, owner_id=OTHER_OWNER, access_token="token-2")


@pytest.fixture
def connector(store) -> MemoryConnector:
    return MemoryConnector(store, TOKENS)


@pytest.fixture
def run():
    return asyncio.run

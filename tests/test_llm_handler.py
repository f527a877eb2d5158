from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from conftest import ScriptedChatModel, answer
from dynamic_data_agent.core.errors import LLMBackendError
from dynamic_data_agent.llm import handler
from dynamic_data_agent.llm.handler import (
    AnthropicChatModel,
    ModelReply,
    OpenAIChatModel,
    ToolCall,
    _to_anthropic_messages,
    _to_anthropic_tools,
    create_chat_model,
)

TOOLS = [{"type": "function", "function": {"name": "query_data", "description": "Query", "parameters": {"type": "object", "properties": {"table": {"type": "string"}}}}}]


class FakeCompletions:
    def __init__(self, response) -> None:
        self.response = response
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return self.response


class FakeOpenAIClient:
    def __init__(self, response) -> None:
        self.chat = SimpleNamespace(completions=FakeCompletions(response))


class FakeAnthropicClient:
    def __init__(self, response) -> None:
        self.messages = FakeCompletions(response)


def test_openai_reply_is_parsed_into_tool_calls(run):
    message = SimpleNamespace(
        content=None,
        tool_calls=[SimpleNamespace(id="call_9", function=SimpleNamespace(name="query_data", arguments='{"table": "risks"}'))],
    )
    response = SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=SimpleNamespace(prompt_tokens=120, completion_tokens=14))
    client = FakeOpenAIClient(response)

    reply = run(OpenAIChatModel(client, "gpt-test", max_retries=1).complete([{"role": "user", "content": "hi"}], TOOLS))

    assert reply.tool_calls == [ToolCall(id="call_9", name="query_data", arguments='{"table": "risks"}')]
    assert (reply.input_tokens, reply.output_tokens) == (120, 14)
    request = client.chat.completions.requests[0]
    assert request["tools"] == TOOLS
    assert request["tool_choice"] == "auto"
    assert request["model"] == "gpt-test"


def test_openai_request_without_tools_omits_tool_choice(run):
    message = SimpleNamespace(content="  plain answer\x00 ", tool_calls=None)
    client = FakeOpenAIClient(SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None))

    reply = run(OpenAIChatModel(client, "gpt-test", max_retries=1).complete([{"role": "user", "content": "hi"}], []))

    assert reply.content == "plain answer"
    assert reply.tool_calls == []
    assert "tool_choice" not in client.chat.completions.requests[0]


def test_anthropic_reply_is_parsed(run):
    response = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="query_data", input={"table": "risks"}),
        ],
        usage=SimpleNamespace(input_tokens=50, output_tokens=9),
    )
    client = FakeAnthropicClient(response)
    messages = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "risks?"}]

    reply = run(AnthropicChatModel(client, "claude-test", max_retries=1).complete(messages, TOOLS))

    assert reply.content == "Let me check."
    assert reply.tool_calls[0].name == "query_data"
    assert json.loads(reply.tool_calls[0].arguments) == {"table": "risks"}
    request = client.messages.requests[0]
    assert request["system"] == "be brief"
    assert request["messages"] == [{"role": "user", "content": "risks?"}]
    assert request["tools"][0]["input_schema"] == TOOLS[0]["function"]["parameters"]


def test_tool_round_translates_to_anthropic_blocks():
    reply = ModelReply(content=None, tool_calls=[
        ToolCall(id="t1", name="query_data", arguments='{"table": "risks"}'),
        ToolCall(id="t2", name="query_data", arguments="not json"),
    ])
    messages = [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "q"},
        reply.to_message(),
        {"role": "tool", "tool_call_id": "t1", "content": "[]"},
        {"role": "tool", "tool_call_id": "t2", "content": '{"error": "bad"}'},
    ]
    system, converted = _to_anthropic_messages(messages)

    assert system == "sys"
    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert converted[1]["content"] == [
        {"type": "tool_use", "id": "t1", "name": "query_data", "input": {"table": "risks"}},
        {"type": "tool_use", "id": "t2", "name": "query_data", "input": {}},
    ]
    assert [block["tool_use_id"] for block in converted[2]["content"]] == ["t1", "t2"]


def test_tools_without_parameters_get_an_empty_schema():
    tools = _to_anthropic_tools([{"type": "function", "function": {"name": "ping"}}])
    assert tools == [{"name": "ping", "description": "", "input_schema": {"type": "object", "properties": {}}}]


class Overloaded(Exception):
    pass


class FlakyChatModel(ScriptedChatModel):
    def __init__(self, failures: int) -> None:
        super().__init__([answer("recovered")])
        self.failures = failures
        self.max_retries = 3

    async def _create(self, messages, tools):
        if self.failures:
            self.failures -= 1
            raise Overloaded("rate limited")
        return await super()._create(messages, tools)


def test_retryable_errors_back_off_and_retry(run, monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(handler, "RETRYABLE_ERRORS", (Overloaded,))
    monkeypatch.setattr(handler.asyncio, "sleep", fake_sleep)

    reply = run(FlakyChatModel(failures=2).complete([], []))

    assert reply.content == "recovered"
    assert len(delays) == 2


def test_retries_are_exhausted_into_a_backend_error(run, monkeypatch):
    async def fake_sleep(delay):
        return None

    monkeypatch.setattr(handler, "RETRYABLE_ERRORS", (Overloaded,))
    monkeypatch.setattr(handler.asyncio, "sleep", fake_sleep)

    with pytest.raises(LLMBackendError, match="after 3 attempts"):
        run(FlakyChatModel(failures=5).complete([], []))


def test_unknown_provider_is_rejected():
    with pytest.raises(NotImplementedError):
        create_chat_model(provider="Carrier Pigeon", api_key="x", model="m")

# src/dynamic_data_agent/llm/handler.py
import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass, field

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.core.errors import LLMBackendError

llm_logger = logging.getLogger("llm_conversation")
app_logger = logging.getLogger("quart.app")

RETRYABLE_ERRORS = (
    openai.RateLimitError, openai.InternalServerError, openai.APIConnectionError,
    anthropic.RateLimitError, anthropic.InternalServerError, anthropic.APIConnectionError,
)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text exactly as the model produced it


@dataclass
class ModelReply:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    def to_message(self) -> dict:
        """The assistant turn as it is appended to the conversation history."""
        message = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                for c in self.tool_calls
            ]
        return message


def _sanitize_llm_output(text: str | None) -> str | None:
    """
    Strips invalid characters from LLM output.
    """
    if text is None:
        return None
    sanitized_text = text.replace('﻿', '')
    sanitized_text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', sanitized_text)
    return sanitized_text.strip()


def _format_for_log(messages: list[dict]) -> str:
    lines = []
    for msg in messages:
        line = f"[{msg.get('role')}]: {msg.get('content')}"
        if msg.get("tool_calls"):
            line += f" tool_calls={json.dumps(msg['tool_calls'])}"
        if msg.get("tool_call_id"):
            line = f"[tool:{msg['tool_call_id']}]: {msg.get('content')}"
        lines.append(line)
    return "\n".join(lines)


class ChatModel:
    """
    A tool-calling chat backend. Subclasses translate the OpenAI-style history and tool
    catalogue into their provider's wire format in `_create`.
    """
    provider = "base"

    def __init__(self, model: str, max_retries: int = None, base_delay: float = None):
        self.model = model
        self.max_retries = max_retries if max_retries is not None else APP_CONFIG.LLM_API_MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else APP_CONFIG.LLM_API_BASE_DELAY

    async def _create(self, messages: list[dict], tools: list[dict]) -> ModelReply:
        raise NotImplementedError

    async def complete(self, messages: list[dict], tools: list[dict], reason: str = "No reason provided.") -> ModelReply:
        full_log_message = (
            f"--- FULL CONTEXT ({self.provider}/{self.model}) ---\n"
            f"--- REASON FOR CALL ---\n{reason}\n\n"
            f"--- History ---\n{_format_for_log(messages)}\n\n"
            f"--- Tools ---\n{', '.join(t.get('function', {}).get('name', '?') for t in tools)}\n"
        )

        attempts = max(1, self.max_retries)
        for attempt in range(attempts):
            try:
                reply = await self._create(messages, tools)
                break
            except RETRYABLE_ERRORS as e:
                if attempt < attempts - 1:
                    delay = (self.base_delay * (2 ** attempt)) + random.uniform(0, 1)
                    app_logger.warning(f"API overloaded or rate limited. Retrying in {delay:.2f}s...")
                    await asyncio.sleep(delay)
                    continue
                llm_logger.error(full_log_message)
                raise LLMBackendError(f"LLM call failed after {attempts} attempts: {e}") from e
            except Exception as e:
                app_logger.error(f"Error calling LLM API for provider {self.provider}: {e}", exc_info=True)
                llm_logger.error(full_log_message)
                llm_logger.error(f"--- ERROR in LLM call ---\n{e}\n" + "-"*50 + "\n")
                raise LLMBackendError(f"AI request failed: {e}") from e

        llm_logger.info(full_log_message)
        llm_logger.info(
            f"--- RESPONSE ---\n{reply.content}\n"
            f"tool_calls={[(c.name, c.arguments) for c in reply.tool_calls]}\n" + "-"*50 + "\n"
        )
        return reply


class OpenAIChatModel(ChatModel):
    """Any OpenAI-compatible chat completions endpoint (OpenAI, AI gateways, Ollama's /v1)."""
    provider = "OpenAI"

    def __init__(self, client: AsyncOpenAI, model: str, max_tokens: int = None, **kwargs):
        super().__init__(model, **kwargs)
        self.client = client
        self.max_tokens = max_tokens or APP_CONFIG.LLM_MAX_TOKENS

    async def _create(self, messages: list[dict], tools: list[dict]) -> ModelReply:
        request = {"model": self.model, "messages": messages, "max_tokens": self.max_tokens}
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        response = await self.client.chat.completions.create(**request)

        message = response.choices[0].message
        tool_calls = [
            ToolCall(id=c.id, name=c.function.name, arguments=c.function.arguments or "")
            for c in (message.tool_calls or [])
        ]
        input_tokens, output_tokens = 0, 0
        if getattr(response, "usage", None):
            input_tokens, output_tokens = response.usage.prompt_tokens, response.usage.completion_tokens
        return ModelReply(_sanitize_llm_output(message.content), tool_calls, input_tokens, output_tokens)


def _to_anthropic_tools(tools: list[dict]) -> list[dict]:
    converted = []
    for tool in tools:
        function = tool.get("function", {})
        converted.append({
            "name": function.get("name"),
            "description": function.get("description", ""),
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def _to_anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    system_parts = []
    converted = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            system_parts.append(msg.get("content") or "")
        elif role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.get("tool_call_id"), "content": msg.get("content") or ""}
            previous = converted[-1] if converted else None
            # Results of one round travel together in a single user turn
            if previous and previous["role"] == "user" and isinstance(previous["content"], list) \
                    and all(b.get("type") == "tool_result" for b in previous["content"]):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif role == "assistant":
            blocks = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for call in msg.get("tool_calls") or []:
                function = call.get("function", {})
                try:
                    tool_input = json.loads(function.get("arguments") or "{}")
                except json.JSONDecodeError:
                    tool_input = {}
                if not isinstance(tool_input, dict):
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": call.get("id"), "name": function.get("name"), "input": tool_input})
            converted.append({"role": "assistant", "content": blocks or ""})
        else:
            converted.append({"role": "user", "content": msg.get("content") or ""})
    return "\n\n".join(system_parts), converted


class AnthropicChatModel(ChatModel):
    provider = "Anthropic"

    def __init__(self, client: AsyncAnthropic, model: str, max_tokens: int = None, **kwargs):
        super().__init__(model, **kwargs)
        self.client = client
        self.max_tokens = max_tokens or APP_CONFIG.LLM_MAX_TOKENS

    async def _create(self, messages: list[dict], tools: list[dict]) -> ModelReply:
        system_prompt, converted = _to_anthropic_messages(messages)
        request = {"model": self.model, "system": system_prompt, "messages": converted, "max_tokens": self.max_tokens}
        if tools:
            request["tools"] = _to_anthropic_tools(tools)
        response = await self.client.messages.create(**request)

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))

        input_tokens, output_tokens = 0, 0
        if getattr(response, "usage", None):
            input_tokens, output_tokens = response.usage.input_tokens, response.usage.output_tokens
        content = _sanitize_llm_output("\n".join(text_parts)) if text_parts else None
        return ModelReply(content, tool_calls, input_tokens, output_tokens)


def create_chat_model(provider: str = None, api_key: str = None, model: str = None, base_url: str = None) -> ChatModel:
    provider = provider or APP_CONFIG.LLM_PROVIDER
    api_key = api_key or APP_CONFIG.LLM_API_KEY
    model = model or APP_CONFIG.LLM_MODEL
    base_url = base_url or APP_CONFIG.LLM_BASE_URL

    if provider == "OpenAI":
        client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=APP_CONFIG.LLM_TIMEOUT)
        return OpenAIChatModel(client, model)
    if provider == "Anthropic":
        client = AsyncAnthropic(api_key=api_key, base_url=base_url, timeout=APP_CONFIG.LLM_TIMEOUT)
        return AnthropicChatModel(client, model)
    raise NotImplementedError(f"Provider '{provider}' is not yet supported.")

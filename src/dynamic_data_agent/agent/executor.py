# src/dynamic_data_agent/agent/executor.py
import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum, auto

from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.core.errors import LLMBackendError
from dynamic_data_agent.llm.handler import ChatModel, ModelReply, ToolCall
from dynamic_data_agent.tools.dispatch import ToolDispatcher

app_logger = logging.getLogger("quart.app")

ITERATION_LIMIT_MESSAGE = (
    "I stopped after {iterations} rounds of tool calls without reaching a final answer. "
    "The data gathered so far is included below; try narrowing the question."
)

EMPTY_ANSWER_MESSAGE = "The model finished without writing an answer. Please try rephrasing the question."


class AgentState(Enum):
    AWAITING_MODEL = auto()
    EXECUTING_TOOLS = auto()
    DONE = auto()
    ITERATION_LIMIT = auto()
    ERROR = auto()


STATUS_BY_STATE = {
    AgentState.DONE: "completed",
    AgentState.ITERATION_LIMIT: "iteration_limit_reached",
    AgentState.ERROR: "error",
}


class ConversationHistory:
    """Append-only message log. Callers get copies; entries are never rewritten."""
    def __init__(self, messages: list[dict] | None = None):
        self._messages = [dict(m) for m in (messages or [])]

    def append(self, message: dict):
        self._messages.append(dict(message))

    def extend(self, messages: list[dict]):
        for message in messages:
            self.append(message)

    def snapshot(self) -> list[dict]:
        return [dict(m) for m in self._messages]

    def __len__(self):
        return len(self._messages)


@dataclass
class AgentResult:
    message: str | None
    data: list = field(default_factory=list)
    iterations: int = 0
    status: str = "completed"
    error: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    history: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status != "error"

    def to_dict(self, include_history: bool = False) -> dict:
        result = {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "iterations": self.iterations,
            "status": self.status,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.error:
            result["error"] = self.error
        if include_history:
            result["history"] = self.history
        return result


def tool_result_message(call: ToolCall, result) -> dict:
    return {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, default=str)}


class ConversationExecutor:
    """
    Drives the model <-> tool loop for one request: ask the model, run every tool call it
    makes in that round concurrently, feed the results back in call order and ask again,
    until the model answers without tools or the iteration cap is hit.
    """
    def __init__(self, llm: ChatModel, dispatcher: ToolDispatcher, max_iterations: int = None):
        self.llm = llm
        self.dispatcher = dispatcher
        self.max_iterations = max_iterations if max_iterations is not None else APP_CONFIG.MAX_TOOL_ITERATIONS
        self.state = AgentState.AWAITING_MODEL
        self.iterations = 0
        self.collected_data = []
        self.input_tokens = 0
        self.output_tokens = 0

    async def _ask_model(self, history: ConversationHistory, tools: list[dict], reason: str) -> ModelReply:
        self.state = AgentState.AWAITING_MODEL
        reply = await self.llm.complete(history.snapshot(), tools, reason=reason)
        self.input_tokens += reply.input_tokens
        self.output_tokens += reply.output_tokens
        return reply

    async def _execute_round(self, calls: list[ToolCall]) -> list[dict]:
        self.state = AgentState.EXECUTING_TOOLS
        app_logger.info(f"Iteration {self.iterations}: Processing {len(calls)} tool call(s)")
        # gather preserves argument order regardless of completion order
        results = await asyncio.gather(*(self.dispatcher.dispatch_call(call) for call in calls))
        self.collected_data.extend(results)
        return [tool_result_message(call, result) for call, result in zip(calls, results)]

    def _result(self, message: str | None, history: ConversationHistory, error: str = None) -> AgentResult:
        return AgentResult(
            message=message,
            data=list(self.collected_data),
            iterations=self.iterations,
            status=STATUS_BY_STATE[self.state],
            error=error,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            history=history.snapshot(),
        )

    async def run(self, system_prompt: str, prior_messages: list[dict] | None, user_message: str | None = None) -> AgentResult:
        history = ConversationHistory([{"role": "system", "content": system_prompt}])
        history.extend(prior_messages or [])
        if user_message:
            history.append({"role": "user", "content": user_message})
        tools = self.dispatcher.catalogue()

        try:
            reply = await self._ask_model(history, tools, reason="Answering the user's question.")
            while reply.tool_calls and self.iterations < self.max_iterations:
                self.iterations += 1
                history.append(reply.to_message())
                history.extend(await self._execute_round(reply.tool_calls))
                reply = await self._ask_model(history, tools, reason=f"Continuing after tool round {self.iterations}.")
        except LLMBackendError as e:
            self.state = AgentState.ERROR
            app_logger.error(f"Conversation aborted after {self.iterations} iteration(s): {e}")
            return self._result(f"Error: {e}", history, error=str(e))

        history.append(reply.to_message())
        if reply.tool_calls:
            self.state = AgentState.ITERATION_LIMIT
            app_logger.warning(f"Iteration cap of {self.max_iterations} reached; model still requested {len(reply.tool_calls)} tool call(s)")
            message = reply.content or ITERATION_LIMIT_MESSAGE.format(iterations=self.iterations)
            return self._result(message, history)

        self.state = AgentState.DONE
        app_logger.info(f"Query completed after {self.iterations} iteration(s)")
        if not reply.content:
            app_logger.warning("Model ended the conversation with an empty answer")
            return self._result(EMPTY_ANSWER_MESSAGE, history)
        return self._result(reply.content, history)

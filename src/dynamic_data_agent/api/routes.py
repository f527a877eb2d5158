# src/dynamic_data_agent/api/routes.py
import functools
import logging
from contextlib import asynccontextmanager

from quart import Blueprint, jsonify, request

from dynamic_data_agent.agent.executor import ConversationExecutor
from dynamic_data_agent.agent.prompts import build_system_prompt, load_schema_registry
from dynamic_data_agent.core import session_manager
from dynamic_data_agent.core.errors import (
    AgentError, AuthError, QueryExecutionError, ToolDispatchError, ValidationError,
)
from dynamic_data_agent.query.aggregation import aggregate
from dynamic_data_agent.query.executor import execute_query
from dynamic_data_agent.query.store import DataScope
from dynamic_data_agent.tools.catalogue import render_tools_context
from dynamic_data_agent.tools.custom import CustomToolRegistry
from dynamic_data_agent.tools.dispatch import BUILTIN_HANDLERS, ToolDispatcher

api_bp = Blueprint('api', __name__)
app_logger = logging.getLogger("quart.app")

STATE = {}

ERROR_STATUS = (
    (ValidationError, 400),
    (ToolDispatchError, 400),
    (AuthError, 401),
    (QueryExecutionError, 502),
)

CONVERSATION_ROLES = ("user", "assistant")


def set_dependencies(app_state):
    """Injects the global application state into this blueprint."""
    global STATE
    STATE = app_state


def _status_for(e: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            return status
    return 500


def json_errors(view):
    """Renders engine errors as {"success": false, "error": ...} with a matching status code."""
    @functools.wraps(view)
    async def wrapper(*args, **kwargs):
        try:
            return await view(*args, **kwargs)
        except AgentError as e:
            status = _status_for(e)
            log = app_logger.error if status >= 500 else app_logger.warning
            log(f"{request.path} failed with {status}: {e}")
            return jsonify({"success": False, "error": str(e)}), status
        except Exception as e:
            app_logger.error(f"An unhandled error occurred in {request.path}: {e}", exc_info=True)
            return jsonify({"success": False, "error": str(e) or "Unknown error"}), 500
    return wrapper


async def _json_body() -> dict:
    data = await request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


async def _open_scope() -> DataScope:
    connector = STATE.get("connector")
    if connector is None:
        raise AgentError("Data store not configured.")
    return await connector.open_scope(request.headers.get("Authorization"))


@asynccontextmanager
async def _request_scope():
    """Opens the caller's scope for the body of a request and releases it afterwards."""
    scope = await _open_scope()
    try:
        yield scope
    finally:
        await scope.close()


def _conversation_messages(messages) -> list[dict]:
    """Client-supplied history may only carry plain user and assistant turns."""
    if messages is None:
        return []
    if not isinstance(messages, list):
        raise ValidationError("messages must be an array")
    cleaned = []
    for message in messages:
        if not isinstance(message, dict) or message.get("role") not in CONVERSATION_ROLES:
            raise ValidationError("Each message must be an object with role 'user' or 'assistant'")
        if not isinstance(message.get("content"), str):
            raise ValidationError("Message content must be a string")
        cleaned.append({"role": message["role"], "content": message["content"]})
    return cleaned


@api_bp.route("/health")
async def health():
    return jsonify({"status": "ok", "llm_configured": STATE.get("llm") is not None})


@api_bp.route("/query-builder", methods=["POST"])
@json_errors
async def query_builder():
    """Direct, model-free access to the query executor."""
    async with _request_scope() as scope:
        data = await _json_body()
        result = await execute_query(
            scope, data.get("table"),
            select=data.get("select"), filters=data.get("filters"), sort=data.get("sort"),
            limit=data.get("limit"), offset=data.get("offset"),
        )
    return jsonify(result)


@api_bp.route("/analytics-query", methods=["POST"])
@json_errors
async def analytics_query():
    async with _request_scope() as scope:
        data = await _json_body()
        result = await aggregate(
            scope, data.get("table"), data.get("aggregation"),
            filters=data.get("filters"), date_range=data.get("dateRange"),
        )
    return jsonify(result)


@api_bp.route("/tools", methods=["GET"])
@json_errors
async def get_tools():
    """Returns the built-in and custom tools available to the caller."""
    async with _request_scope() as scope:
        dispatcher = ToolDispatcher(scope, await CustomToolRegistry.load(scope))
    catalogue = dispatcher.catalogue()
    return jsonify({"tools": catalogue, "tools_context": render_tools_context(catalogue)})


@api_bp.route("/tools/<tool_name>", methods=["POST"])
@json_errors
async def invoke_tool(tool_name):
    """Runs a single specialized or custom tool outside of a conversation."""
    async with _request_scope() as scope:
        data = await _json_body()
        custom_tools = None if tool_name in BUILTIN_HANDLERS else await CustomToolRegistry.load(scope)
        result = await ToolDispatcher(scope, custom_tools).execute(tool_name, data)
    return jsonify(result)


@api_bp.route("/ai-query", methods=["POST"])
@json_errors
async def ai_query():
    """Answers a natural-language question by letting the model chain tool calls."""
    async with _request_scope() as scope:
        return await _answer_question(scope)


async def _answer_question(scope: DataScope):
    data = await _json_body()
    prior_messages = _conversation_messages(data.get("messages"))
    user_input = data.get("message")
    if user_input is not None and not isinstance(user_input, str):
        raise ValidationError("message must be a string")
    if not user_input and not prior_messages:
        raise ValidationError("Missing 'message' or 'messages'")

    llm = STATE.get("llm")
    if llm is None:
        raise AgentError("LLM not configured.")

    session_id = data.get("session_id")
    if session_id:
        session_history = session_manager.get_session_history(session_id, scope.owner_id)
        if session_history is None:
            return jsonify({"success": False, "error": "Session not found"}), 404
        prior_messages = session_history + prior_messages

    dispatcher = ToolDispatcher(scope, await CustomToolRegistry.load(scope))
    registry = await load_schema_registry(scope)
    system_prompt = build_system_prompt(render_tools_context(dispatcher.catalogue()), registry)

    executor = ConversationExecutor(llm, dispatcher, STATE.get("max_iterations"))
    result = await executor.run(system_prompt, prior_messages, user_input)

    if session_id:
        session_data = session_manager.get_session(session_id, scope.owner_id)
        if session_data is None:
            app_logger.warning(f"Session {session_id} was removed while a query was running.")
        else:
            if user_input:
                session_manager.add_to_history(session_id, 'user', user_input)
                if session_data['name'] == 'New Chat':
                    new_name = user_input[:40] + '...' if len(user_input) > 40 else user_input
                    session_manager.update_session_name(session_id, new_name)
            if result.success and result.message:
                session_manager.add_to_history(session_id, 'assistant', result.message)
            session_manager.update_token_count(session_id, result.input_tokens, result.output_tokens)

    body = result.to_dict()
    if session_id:
        body["session_id"] = session_id
    return jsonify(body), (200 if result.success else 502)


@api_bp.route("/sessions", methods=["GET"])
@json_errors
async def get_sessions():
    """Returns the caller's chat sessions, newest first."""
    async with _request_scope() as scope:
        owner_id = scope.owner_id
    return jsonify(session_manager.get_all_sessions(owner_id))


@api_bp.route("/session/<session_id>", methods=["GET"])
@json_errors
async def get_session_history(session_id):
    """Retrieves the chat history and token counts for a specific session."""
    async with _request_scope() as scope:
        owner_id = scope.owner_id
    session_data = session_manager.get_session(session_id, owner_id)
    if session_data:
        response_data = {
            "name": session_data.get("name"),
            "history": session_data.get("generic_history", []),
            "input_tokens": session_data.get("input_tokens", 0),
            "output_tokens": session_data.get("output_tokens", 0)
        }
        return jsonify(response_data)
    return jsonify({"success": False, "error": "Session not found"}), 404


@api_bp.route("/session/<session_id>", methods=["DELETE"])
@json_errors
async def delete_session(session_id):
    """Removes one of the caller's chat sessions."""
    async with _request_scope() as scope:
        owner_id = scope.owner_id
    if session_manager.delete_session(session_id, owner_id):
        app_logger.info(f"Deleted session: {session_id}.")
        return jsonify({"success": True, "session_id": session_id})
    return jsonify({"success": False, "error": "Session not found"}), 404


@api_bp.route("/session", methods=["POST"])
@json_errors
async def new_session():
    """Creates a new chat session."""
    async with _request_scope() as scope:
        owner_id = scope.owner_id
    session_id = session_manager.create_session(owner_id)
    app_logger.info(f"Created new session: {session_id}.")
    return jsonify({"session_id": session_id, "name": "New Chat"})

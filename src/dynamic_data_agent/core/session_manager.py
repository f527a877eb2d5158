# src/dynamic_data_agent/core/session_manager.py
import logging
import uuid
from datetime import datetime

from dynamic_data_agent.core.config import APP_CONFIG

app_logger = logging.getLogger("quart.app")

_SESSIONS = {}

# Only user and final assistant turns are kept; tool rounds stay inside a single request.
HISTORY_ROLES = ("user", "assistant")


def create_session(owner_id: str, name: str = "New Chat") -> str:
    session_id = str(uuid.uuid4())
    _SESSIONS[session_id] = {
        "owner_id": owner_id,
        "generic_history": [],
        "name": name,
        "created_at": datetime.now().isoformat(),
        "input_tokens": 0,
        "output_tokens": 0
    }
    _evict_oldest()
    return session_id

def get_session(session_id: str, owner_id: str) -> dict | None:
    """A session is only visible to the user who created it."""
    session = _SESSIONS.get(session_id)
    if session is None or session["owner_id"] != owner_id:
        return None
    return session

def get_all_sessions(owner_id: str) -> list[dict]:
    session_summaries = [
        {"id": sid, "name": s_data["name"], "created_at": s_data["created_at"]}
        for sid, s_data in _SESSIONS.items()
        if s_data["owner_id"] == owner_id
    ]
    session_summaries.sort(key=lambda x: x["created_at"], reverse=True)
    return session_summaries

def add_to_history(session_id: str, role: str, content: str):
    if session_id in _SESSIONS and role in HISTORY_ROLES:
        _SESSIONS[session_id]['generic_history'].append({'role': role, 'content': content})

def update_session_name(session_id: str, new_name: str):
    if session_id in _SESSIONS:
        _SESSIONS[session_id]['name'] = new_name

def get_session_history(session_id: str, owner_id: str) -> list | None:
    session = get_session(session_id, owner_id)
    if session is None:
        return None
    return list(session['generic_history'])

def update_token_count(session_id: str, input_tokens: int, output_tokens: int):
    """Updates the token counts for a given session."""
    if session_id in _SESSIONS:
        _SESSIONS[session_id]['input_tokens'] += input_tokens
        _SESSIONS[session_id]['output_tokens'] += output_tokens

def delete_session(session_id: str, owner_id: str) -> bool:
    if get_session(session_id, owner_id) is None:
        return False
    del _SESSIONS[session_id]
    return True

def _evict_oldest():
    # dicts keep insertion order, so the first keys are the oldest sessions
    while len(_SESSIONS) > max(APP_CONFIG.MAX_SESSIONS, 1):
        oldest = next(iter(_SESSIONS))
        del _SESSIONS[oldest]
        app_logger.info(f"Session limit reached; evicted session {oldest}.")

def clear_sessions():
    _SESSIONS.clear()

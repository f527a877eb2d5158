# src/dynamic_data_agent/core/config.py
import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    return int(raw) if raw else default


class AppConfig:
    SUPABASE_URL = os.getenv("SUPABASE_URL", "")
    SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

    # "OpenAI" covers any OpenAI-compatible chat completions endpoint (gateways, Ollama, ...)
    LLM_PROVIDER = os.getenv("LLM_PROVIDER", "OpenAI")
    LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4.1-mini")
    LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or os.getenv("ANTHROPIC_API_KEY")
    LLM_BASE_URL = os.getenv("LLM_BASE_URL") or None
    LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 4096)
    LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))
    LLM_API_MAX_RETRIES = _env_int("LLM_API_MAX_RETRIES", 5)
    LLM_API_BASE_DELAY = float(os.getenv("LLM_API_BASE_DELAY", "2")) # base delay in seconds for exponential backoff

    # Upper bound on model <-> tool round-trips for a single request
    MAX_TOOL_ITERATIONS = _env_int("MAX_TOOL_ITERATIONS", 5)

    DEFAULT_PAGE_SIZE = _env_int("DEFAULT_PAGE_SIZE", 100)
    SPECIALIZED_QUERY_LIMIT = _env_int("SPECIALIZED_QUERY_LIMIT", 100)
    OWNER_COLUMN = os.getenv("OWNER_COLUMN", "user_id")

    # Chat sessions live in process memory; the oldest are dropped past this count
    MAX_SESSIONS = _env_int("MAX_SESSIONS", 1000)

    LOG_DIR = os.getenv("LOG_DIR", "logs")
    HOST = os.getenv("HOST", "127.0.0.1")
    PORT = _env_int("PORT", 5000)

APP_CONFIG = AppConfig()

# src/dynamic_data_agent/main.py
import argparse
import asyncio
import logging
import os

import hypercorn.asyncio
from hypercorn.config import Config
from quart import Quart
from quart_cors import cors

from dynamic_data_agent.api.routes import api_bp, set_dependencies
from dynamic_data_agent.core.config import APP_CONFIG
from dynamic_data_agent.llm.handler import create_chat_model
from dynamic_data_agent.query.store import SupabaseConnector

APP_STATE = {
    "llm": None,
    "connector": None,
    "max_iterations": APP_CONFIG.MAX_TOOL_ITERATIONS,
}


def create_app(app_state: dict = None):
    app = Quart(__name__)
    app = cors(app, allow_origin="*", allow_headers=["authorization", "x-client-info", "apikey", "content-type"])

    set_dependencies(app_state if app_state is not None else APP_STATE)
    app.register_blueprint(api_bp)
    return app


def configure_services(app_state: dict):
    """Builds the store connector and the chat model from the environment."""
    app_logger = logging.getLogger("quart.app")
    try:
        app_state["connector"] = SupabaseConnector(APP_CONFIG.SUPABASE_URL, APP_CONFIG.SUPABASE_ANON_KEY)
    except ValueError as e:
        app_logger.error(f"{e} Data routes will return errors until configured.")

    if APP_CONFIG.LLM_API_KEY or APP_CONFIG.LLM_BASE_URL:
        app_state["llm"] = create_chat_model()
    else:
        app_logger.warning("No LLM credentials configured; /ai-query is disabled.")


def configure_logging(log_dir: str):
    os.makedirs(log_dir, exist_ok=True)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    logging.getLogger("quart.app").setLevel(logging.INFO)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)

    # Prevent Hypercorn's loggers from propagating to the root logger
    logging.getLogger("hypercorn.access").propagate = False
    logging.getLogger("hypercorn.error").propagate = False

    # Configure the separate logger for LLM conversations
    llm_log_handler = logging.FileHandler(os.path.join(log_dir, "llm_conversations.log"))
    llm_log_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
    llm_logger = logging.getLogger("llm_conversation")
    llm_logger.setLevel(logging.INFO)
    llm_logger.addHandler(llm_log_handler)
    llm_logger.propagate = False


async def main(host: str, port: int):
    configure_logging(APP_CONFIG.LOG_DIR)
    configure_services(APP_STATE)
    app = create_app(APP_STATE)

    print("\n--- Starting Hypercorn Server for Quart App ---")
    print(f"Dynamic data agent ready on http://{host}:{port}")
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = None
    config.errorlog = None
    await hypercorn.asyncio.serve(app, config)


def run():
    parser = argparse.ArgumentParser(description="Run the dynamic data agent service.")
    parser.add_argument("--host", default=APP_CONFIG.HOST, help="Interface to bind to.")
    parser.add_argument("--port", type=int, default=APP_CONFIG.PORT, help="Port to listen on.")
    parser.add_argument("--max-iterations", type=int, default=None, help="Cap on model/tool rounds per question.")
    args = parser.parse_args()

    if args.max_iterations is not None:
        APP_STATE["max_iterations"] = args.max_iterations

    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        print("\nServer shut down.")


if __name__ == "__main__":
    run()

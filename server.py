"""Run the chat relay server."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
import uvicorn

from chat_relay import create_app, load_config
from chat_relay.utils import setup_logging

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent


def load_env_files(root: Path = PROJECT_ROOT) -> None:
    """Load ``.env`` then ``.env.local`` from the project root; real env vars win over ``.env``."""
    load_dotenv(root / ".env")
    load_dotenv(root / ".env.local", override=True)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay widget chat turns to the completion API.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (defaults to $PORT or 4000).")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--llm_endpoint", help="Completion endpoint (overrides OPENAI_ENDPOINT).")
    parser.add_argument("--llm_model", help="Model name for completions (overrides OPENAI_MODEL).")
    parser.add_argument("--request_timeout", type=int, help="Timeout for upstream calls (seconds).")
    parser.add_argument("--max_history_messages", type=int, help="Messages sent to the model as context.")
    parser.add_argument("--store_url", help="Document store URL (overrides CONVERSATION_STORE_URL).")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    load_env_files()
    setup_logging(args.log_dir, logging.INFO)

    config = load_config()
    if args.llm_endpoint:
        config.llm.endpoint = args.llm_endpoint
    if args.llm_model:
        config.llm.model = args.llm_model
    if args.request_timeout:
        config.llm.request_timeout = args.request_timeout
    if args.max_history_messages:
        config.max_history_messages = args.max_history_messages
    if args.store_url:
        config.store.url = args.store_url

    port = args.port or int(os.getenv("PORT", "4000"))
    app = create_app(config)
    logger.info("Starting chat relay on %s:%d (%s)", args.host, port, config.environment)
    uvicorn.run(app, host=args.host, port=port)


if __name__ == "__main__":
    main()

"""Logging helpers and request utilities."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from fastapi import Request

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_NAME = "chat_relay.log"


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> None:
    """Configure console and optional rotating file logging once per process."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(handler, "_chat_relay", False) for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._chat_relay = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        log_file = (path / LOG_FILE_NAME).resolve()
        for handler in root.handlers:
            if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == log_file:
                return
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        logging.getLogger(__name__).info("Logging to %s", log_file)


def client_address(request: Request) -> str:
    """First hop of ``X-Forwarded-For`` when present, else the socket peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return request.client.host
    return "unknown"

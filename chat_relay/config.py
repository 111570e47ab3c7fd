"""Configuration objects for the chat relay."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

ENVIRONMENTS = ("development", "production", "test")


@dataclass
class ChatLLMConfig:
    """Upstream completion API connection details."""

    endpoint: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4.1-mini"
    api_key: str = ""
    request_timeout: int = 60


@dataclass
class StoreConfig:
    """Document store connection details. An empty url keeps conversations in memory."""

    url: str = ""
    request_timeout: int = 15


@dataclass
class RelayConfig:
    """Runtime controls for the relay."""

    client_api_key: str = ""
    admin_api_key: Optional[str] = None
    environment: str = "development"
    llm: ChatLLMConfig = field(default_factory=ChatLLMConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 30
    max_history_messages: int = 30
    admin_page_limit: int = 50
    admin_max_page_limit: int = 200
    cors_origins: str = "*"
    widget_bundle_path: str = "widget/dist/chat-widget.js"
    system_prompt: str = "You are a concise and helpful AI assistant embedded in a support chat widget."
    fallback_message: str = "I could not generate a response right now."

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def validate(self) -> None:
        """Raise ``ValueError`` when the configuration cannot serve traffic."""
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {', '.join(ENVIRONMENTS)}")
        if not self.client_api_key:
            raise ValueError("client_api_key must be configured")
        if self.rate_limit_window_seconds <= 0 or self.rate_limit_max_requests <= 0:
            raise ValueError("rate limit window and maximum must be positive")
        if self.max_history_messages <= 0:
            raise ValueError("max_history_messages must be positive")
        if self.is_production and "*" in self.allowed_origins:
            raise ValueError("Refusing to start with CORS_ORIGIN='*' in production")


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _required(environ: Mapping[str, str], name: str) -> str:
    value = (environ.get(name) or "").strip()
    if not value:
        raise ValueError(f"{name} must be set")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """Build a :class:`RelayConfig` from environment variables.

    ``WIDGET_API_KEY`` and ``OPENAI_API_KEY`` are required. ``ADMIN_API_KEY``
    is optional; without it the admin routes answer 503. Rate limit windows
    are given in milliseconds to match the widget deployment docs.
    """
    environ = os.environ if environ is None else environ
    defaults = RelayConfig()
    llm_defaults = ChatLLMConfig()

    environment = (environ.get("RELAY_ENV") or environ.get("NODE_ENV") or defaults.environment).strip()
    window_ms = _positive_int(environ, "RATE_LIMIT_WINDOW_MS", int(defaults.rate_limit_window_seconds * 1000))

    config = RelayConfig(
        client_api_key=_required(environ, "WIDGET_API_KEY"),
        admin_api_key=(environ.get("ADMIN_API_KEY") or "").strip() or None,
        environment=environment,
        llm=ChatLLMConfig(
            endpoint=environ.get("OPENAI_ENDPOINT") or llm_defaults.endpoint,
            model=environ.get("OPENAI_MODEL") or llm_defaults.model,
            api_key=_required(environ, "OPENAI_API_KEY"),
            request_timeout=_positive_int(environ, "OPENAI_TIMEOUT_SECONDS", llm_defaults.request_timeout),
        ),
        store=StoreConfig(url=(environ.get("CONVERSATION_STORE_URL") or "").strip()),
        rate_limit_window_seconds=window_ms / 1000.0,
        rate_limit_max_requests=_positive_int(environ, "RATE_LIMIT_MAX_REQUESTS", defaults.rate_limit_max_requests),
        max_history_messages=_positive_int(environ, "MAX_HISTORY_MESSAGES", defaults.max_history_messages),
        cors_origins=environ.get("CORS_ORIGIN") or defaults.cors_origins,
        widget_bundle_path=environ.get("WIDGET_BUNDLE_PATH") or defaults.widget_bundle_path,
    )
    config.validate()
    return config

"""Streaming chat relay between a website widget and a completion API.

The package authenticates and rate limits chat requests, keeps conversation
history in a document store, streams the model's reply upstream-to-client as
line-delimited JSON events and records the final assistant message once.
``chat_relay.api.create_app`` builds the HTTP service and
``chat_relay.service.ChatRelayService`` holds the per-request relay logic.
"""

from .api import create_app
from .config import ChatLLMConfig, RelayConfig, StoreConfig, load_config
from .service import ChatRelayService

__all__ = ["ChatLLMConfig", "ChatRelayService", "RelayConfig", "StoreConfig", "create_app", "load_config"]

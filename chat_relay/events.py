"""Outward stream events and their wire encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, Union


@dataclass(frozen=True)
class StartEvent:
    conversation_id: str


@dataclass(frozen=True)
class TokenEvent:
    token: str


@dataclass(frozen=True)
class DoneEvent:
    message: str
    conversation_id: str


@dataclass(frozen=True)
class ErrorEvent:
    error: str


OutwardEvent = Union[StartEvent, TokenEvent, DoneEvent, ErrorEvent]
TERMINAL_EVENTS = (DoneEvent, ErrorEvent)


def event_payload(event: OutwardEvent) -> Dict[str, str]:
    if isinstance(event, StartEvent):
        return {"type": "start", "conversationId": event.conversation_id}
    if isinstance(event, TokenEvent):
        return {"type": "token", "token": event.token}
    if isinstance(event, DoneEvent):
        return {"type": "done", "message": event.message, "conversationId": event.conversation_id}
    if isinstance(event, ErrorEvent):
        return {"type": "error", "error": event.error}
    raise TypeError(f"Unknown outward event type: {type(event).__name__}")


def encode_event(event: OutwardEvent) -> str:
    """One compact JSON object followed by a newline."""
    return json.dumps(event_payload(event), ensure_ascii=False, separators=(",", ":")) + "\n"


def is_terminal(event: OutwardEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)

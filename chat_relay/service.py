"""Per-request orchestration of a relayed chat turn.

A chat request moves through these states::

    ADMITTED -> AUTHENTICATED -> VALIDATED -> HISTORY_LOADED
             -> STREAMING -> PERSISTED -> SUCCEEDED

and may end in FAILED from any state after admission. Rejections before
HISTORY_LOADED have no side effects. Once the user turn is stored it is
kept even if the upstream call fails afterwards.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError

from .auth import CredentialGate
from .config import RelayConfig
from .errors import Internal, InvalidInput, NotFound, RateLimited, RelayError, UpstreamFailure
from .events import DoneEvent, ErrorEvent, OutwardEvent, StartEvent, TokenEvent
from .llm_client import ChatLLMClient, UpstreamProgress
from .rate_limit import RateLimiter
from .schemas import ChatRequest
from .store import ConversationStore, create_store
from .stream_parser import TokenAccumulator

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"


class RelayState(str, Enum):
    ADMITTED = "admitted"
    AUTHENTICATED = "authenticated"
    VALIDATED = "validated"
    HISTORY_LOADED = "history_loaded"
    STREAMING = "streaming"
    PERSISTED = "persisted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ChatTurn:
    """A validated request whose conversation and history are loaded."""

    session_id: str
    conversation_id: str
    history: List[Dict[str, str]] = field(default_factory=list)
    state: RelayState = RelayState.VALIDATED

    def advance(self, state: RelayState) -> None:
        logger.debug("Conversation %s: %s -> %s", self.conversation_id, self.state.value, state.value)
        self.state = state


class ChatRelayService:
    """Core relay engine used by the HTTP layer."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        store: Optional[ConversationStore] = None,
        client: Optional[ChatLLMClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        gate: Optional[CredentialGate] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store if store is not None else create_store(config.store)
        self.client = client if client is not None else ChatLLMClient(config.llm)
        # RateLimiter defines __len__, so an empty one is falsy
        self.rate_limiter = (
            rate_limiter
            if rate_limiter is not None
            else RateLimiter(config.rate_limit_window_seconds, config.rate_limit_max_requests)
        )
        self.gate = gate if gate is not None else CredentialGate(config.client_api_key, config.admin_api_key)
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock() * 1000)

    # ----- admission, authentication, validation -----

    def admit(self, client_key: str) -> None:
        if not self.rate_limiter.admit(client_key):
            raise RateLimited(retry_after=self.rate_limiter.retry_after(client_key))

    def accept(self, client_key: str, presented_key: Optional[str], body: bytes) -> ChatRequest:
        """Run the side-effect free checks in order and return the typed request."""
        self.admit(client_key)
        logger.debug("Request from %s %s", client_key, RelayState.ADMITTED.value)
        self.gate.require_client(presented_key)
        logger.debug("Request from %s %s", client_key, RelayState.AUTHENTICATED.value)
        request = self.validate(body)
        logger.debug("Request from %s %s for session %s", client_key, RelayState.VALIDATED.value, request.session_id)
        return request

    def validate(self, body: bytes) -> ChatRequest:
        try:
            payload = json.loads(body) if body else None
        except ValueError as exc:
            raise InvalidInput(details=[{"loc": [], "msg": "Malformed JSON body", "type": "json_invalid"}]) from exc
        if not isinstance(payload, dict):
            raise InvalidInput(details=[{"loc": [], "msg": "Body must be a JSON object", "type": "type_error"}])
        try:
            return ChatRequest.parse_obj(payload)
        except ValidationError as exc:
            details = [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
                for error in exc.errors()
            ]
            raise InvalidInput(details=details) from exc

    # ----- history -----

    def prepare(self, request: ChatRequest) -> ChatTurn:
        """Resolve the conversation, store the user turn and load the history window."""
        try:
            now = self._now()
            conversation_id = self.store.get_or_create(request.session_id, now)
            self.store.append(conversation_id, "user", request.message, now)
            history = self.store.recent_history(conversation_id, self.config.max_history_messages)
        except RelayError:
            logger.exception("Loading history failed for session %s", request.session_id)
            raise
        except Exception as exc:
            logger.exception("Loading history failed for session %s", request.session_id)
            raise Internal() from exc

        logger.info(
            "Loaded %d message(s) for conversation %s (session %s)",
            len(history),
            conversation_id,
            request.session_id,
        )
        turn = ChatTurn(session_id=request.session_id, conversation_id=conversation_id, history=history)
        turn.advance(RelayState.HISTORY_LOADED)
        return turn

    def _upstream_messages(self, history: List[Dict[str, str]]) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.config.system_prompt}]
        messages.extend({"role": item["role"], "content": item["content"]} for item in history)
        return messages

    # ----- streaming -----

    def stream_events(self, turn: ChatTurn, *, emit_start: bool = True) -> Iterator[OutwardEvent]:
        """Relay the upstream stream as outward events.

        Yields ``start`` (when ``emit_start``), one ``token`` per fragment and
        exactly one terminal ``done`` or ``error``. The assistant turn is
        stored before ``done`` is yielded. If the consumer closes the
        generator while tokens are still arriving, the upstream connection is
        closed and nothing is stored. If the upstream had already finished,
        the reply is stored before the generator exits.
        """
        if emit_start:
            yield StartEvent(conversation_id=turn.conversation_id)
        turn.advance(RelayState.STREAMING)

        accumulator = TokenAccumulator()
        final_message = ""
        failed = False
        progress = UpstreamProgress()
        try:
            messages = self._upstream_messages(turn.history)
            with closing(self.client.stream_completion(messages, progress=progress)) as tokens:
                for token in tokens:
                    accumulator.add(token)
                    try:
                        yield TokenEvent(token=token)
                    except GeneratorExit:
                        if progress.finished:
                            self._persist_after_disconnect(turn, tokens, accumulator)
                        raise
            final_message = accumulator.final_message(self.config.fallback_message)
            self.store.append(turn.conversation_id, "assistant", final_message, self._now())
            turn.advance(RelayState.PERSISTED)
        except UpstreamFailure:
            failed = True
            logger.exception("Upstream failure for conversation %s", turn.conversation_id)
        except Exception:
            failed = True
            logger.exception("Relay failed for conversation %s", turn.conversation_id)

        if failed:
            turn.advance(RelayState.FAILED)
            yield ErrorEvent(error=GENERIC_ERROR)
            return

        turn.advance(RelayState.SUCCEEDED)
        logger.info(
            "Relayed %d character(s) for conversation %s",
            len(final_message),
            turn.conversation_id,
        )
        yield DoneEvent(message=final_message, conversation_id=turn.conversation_id)

    def _persist_after_disconnect(self, turn: ChatTurn, tokens: Iterator[str], accumulator: TokenAccumulator) -> None:
        """Store the reply of an upstream that finished before the consumer went away."""
        try:
            for token in tokens:
                accumulator.add(token)
            final_message = accumulator.final_message(self.config.fallback_message)
            self.store.append(turn.conversation_id, "assistant", final_message, self._now())
            turn.advance(RelayState.PERSISTED)
        except Exception:
            turn.advance(RelayState.FAILED)
            logger.exception("Storing the reply failed after disconnect for conversation %s", turn.conversation_id)
            return
        logger.info("Consumer left conversation %s after the upstream finished; reply stored", turn.conversation_id)

    def complete(self, turn: ChatTurn) -> Dict[str, str]:
        """Run the same relay but buffer everything into one response body."""
        with closing(self.stream_events(turn, emit_start=False)) as events:
            for event in events:
                if isinstance(event, DoneEvent):
                    return {"conversationId": event.conversation_id, "message": event.message}
                if isinstance(event, ErrorEvent):
                    raise UpstreamFailure()
        raise Internal("Relay ended without a terminal event")

    # ----- admin -----

    def list_conversations(self, limit: Optional[int] = None) -> Dict[str, Any]:
        page_limit = self.config.admin_page_limit if limit is None else limit
        if page_limit <= 0 or page_limit > self.config.admin_max_page_limit:
            raise InvalidInput(
                details=[{"loc": ["query", "limit"], "msg": "limit out of range", "type": "value_error"}]
            )
        try:
            page = self.store.list(page_limit)
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Listing conversations failed")
            raise Internal() from exc
        return page.to_dict()

    def get_thread(self, conversation_id: str) -> Dict[str, Any]:
        if not self.store.is_valid_key(conversation_id):
            raise InvalidInput("Invalid conversation id")
        try:
            thread = self.store.thread(conversation_id)
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Fetching conversation %s failed", conversation_id)
            raise Internal() from exc
        if thread is None:
            raise NotFound("Conversation not found")
        return thread.to_dict()

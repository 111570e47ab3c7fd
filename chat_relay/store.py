"""Conversation persistence behind a narrow interface.

Two implementations are provided. :class:`InMemoryConversationStore` keeps
everything in the process and is used for tests and single-node demos.
:class:`HttpConversationStore` talks to the hosted document database through
its HTTP query/mutation API, where conversations and messages live in two
collections indexed by session id, update time and (conversation, created
time).
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import requests

from .config import StoreConfig
from .errors import StoreArgumentError, StoreError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")
PREVIEW_LENGTH = 500

_UUID_HEX = re.compile(r"^[0-9a-f]{32}$")
_DOCUMENT_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class ConversationSummary:
    id: str
    session_id: str
    created_at: int
    updated_at: int
    last_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastMessage": self.last_message,
        }


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }


@dataclass
class ConversationPage:
    """One page of summaries, newest first, plus the size of the whole collection."""

    conversations: List[ConversationSummary]
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"conversations": [item.to_dict() for item in self.conversations], "total": self.total}


@dataclass
class Thread:
    conversation: ConversationSummary
    messages: List[StoredMessage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation": self.conversation.to_dict(),
            "messages": [message.to_dict() for message in self.messages],
        }


class ConversationStore(Protocol):
    def get_or_create(self, session_id: str, now: int) -> str:
        ...

    def append(self, conversation_id: str, role: str, content: str, at: int) -> str:
        ...

    def recent_history(self, conversation_id: str, limit: int) -> List[Dict[str, str]]:
        ...

    def list(self, page_limit: int) -> ConversationPage:
        ...

    def thread(self, conversation_id: str) -> Optional[Thread]:
        ...

    def is_valid_key(self, conversation_id: str) -> bool:
        ...


def _window(messages: List[Dict[str, str]], limit: int) -> List[Dict[str, str]]:
    if limit <= 0 or len(messages) <= limit:
        return messages
    return messages[len(messages) - limit :]


def _check_role(role: str) -> None:
    if role not in ROLES:
        raise ValueError(f"role must be one of {ROLES}, got {role!r}")


class InMemoryConversationStore:
    """Thread-safe store holding conversations in process memory.

    Get-or-create runs under the store lock, so this implementation never
    produces duplicate conversations for one session id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: Dict[str, ConversationSummary] = {}
        self._by_session: Dict[str, str] = {}
        self._messages: Dict[str, List[StoredMessage]] = {}

    def get_or_create(self, session_id: str, now: int) -> str:
        with self._lock:
            existing = self._by_session.get(session_id)
            if existing is not None:
                return existing
            conversation_id = uuid.uuid4().hex
            self._conversations[conversation_id] = ConversationSummary(
                id=conversation_id,
                session_id=session_id,
                created_at=now,
                updated_at=now,
            )
            self._by_session[session_id] = conversation_id
            self._messages[conversation_id] = []
        logger.info("Created conversation %s for session %s", conversation_id, session_id)
        return conversation_id

    def append(self, conversation_id: str, role: str, content: str, at: int) -> str:
        _check_role(role)
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise StoreError(f"Unknown conversation {conversation_id}")
            message = StoredMessage(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=at,
            )
            messages = self._messages[conversation_id]
            messages.append(message)
            # sort is stable, so equal timestamps keep insertion order
            messages.sort(key=lambda item: item.created_at)
            conversation.updated_at = at
            conversation.last_message = content[:PREVIEW_LENGTH]
        return message.id

    def recent_history(self, conversation_id: str, limit: int) -> List[Dict[str, str]]:
        with self._lock:
            messages = [
                {"role": message.role, "content": message.content}
                for message in self._messages.get(conversation_id, [])
            ]
        return _window(messages, limit)

    def list(self, page_limit: int) -> ConversationPage:
        with self._lock:
            conversations = sorted(self._conversations.values(), key=lambda item: item.updated_at, reverse=True)
            return ConversationPage(
                conversations=[ConversationSummary(**vars(item)) for item in conversations[:page_limit]],
                total=len(conversations),
            )

    def thread(self, conversation_id: str) -> Optional[Thread]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return None
            return Thread(
                conversation=ConversationSummary(**vars(conversation)),
                messages=list(self._messages.get(conversation_id, [])),
            )

    def is_valid_key(self, conversation_id: str) -> bool:
        return bool(_UUID_HEX.match(conversation_id))


class HttpConversationStore:
    """Client for the document database's HTTP query/mutation API.

    Calls are ``POST {url}/api/query`` or ``POST {url}/api/mutation`` with a
    function path and arguments; the service answers with
    ``{"status": "success", "value": ...}`` or
    ``{"status": "error", "errorMessage": ...}``.

    Get-or-create is a lookup followed by an insert on the server side with no
    uniqueness constraint. Two concurrent first requests for one session id
    can therefore create two conversations.
    """

    GET_OR_CREATE = "conversations:getOrCreateConversation"
    ADD_MESSAGE = "conversations:addMessage"
    HISTORY = "conversations:getHistoryForModel"
    LIST = "conversations:listConversations"
    THREAD = "conversations:getConversationThread"
    ARGUMENT_ERROR = "ArgumentValidationError"

    def __init__(self, config: StoreConfig, *, session: Optional[requests.Session] = None) -> None:
        if not config.url:
            raise ValueError("Store url must be configured for HttpConversationStore")
        self.config = config
        self.base_url = config.url.rstrip("/")
        self.session = session or requests.Session()

    def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/api/{kind}"
        logger.debug("Store %s %s", kind, path)
        try:
            response = self.session.post(
                url,
                json={"path": path, "args": args, "format": "json"},
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreError(f"Store {kind} {path} failed: {exc}") from exc

        if not isinstance(payload, dict) or payload.get("status") != "success":
            message = payload.get("errorMessage") if isinstance(payload, dict) else payload
            if isinstance(message, str) and self.ARGUMENT_ERROR in message:
                raise StoreArgumentError(f"Store {kind} {path} rejected its arguments: {message}")
            raise StoreError(f"Store {kind} {path} returned an error: {message}")
        return payload.get("value")

    def get_or_create(self, session_id: str, now: int) -> str:
        value = self._call("mutation", self.GET_OR_CREATE, {"sessionId": session_id, "now": now})
        return str(value)

    def append(self, conversation_id: str, role: str, content: str, at: int) -> str:
        _check_role(role)
        value = self._call(
            "mutation",
            self.ADD_MESSAGE,
            {"conversationId": conversation_id, "role": role, "content": content, "createdAt": at},
        )
        return str(value)

    def recent_history(self, conversation_id: str, limit: int) -> List[Dict[str, str]]:
        value = self._call("query", self.HISTORY, {"conversationId": conversation_id, "limit": limit}) or []
        messages = [{"role": item["role"], "content": item["content"]} for item in value]
        # the server already windows; re-apply in case it ignores the limit
        return _window(messages, limit)

    def list(self, page_limit: int) -> ConversationPage:
        value = self._call("query", self.LIST, {}) or []
        conversations = [self._summary(item) for item in value]
        conversations.sort(key=lambda item: item.updated_at, reverse=True)
        return ConversationPage(conversations=conversations[:page_limit], total=len(conversations))

    def thread(self, conversation_id: str) -> Optional[Thread]:
        try:
            value = self._call("query", self.THREAD, {"conversationId": conversation_id})
        except StoreArgumentError:
            # well-formed but not an id of the conversations table
            logger.debug("Store rejected conversation id %s", conversation_id)
            return None
        if not value:
            return None
        messages = [
            StoredMessage(
                id=str(item["_id"]),
                conversation_id=str(item["conversationId"]),
                role=item["role"],
                content=item["content"],
                created_at=int(item["createdAt"]),
            )
            for item in value.get("messages") or []
        ]
        return Thread(conversation=self._summary(value["conversation"]), messages=messages)

    def is_valid_key(self, conversation_id: str) -> bool:
        return bool(_DOCUMENT_ID.match(conversation_id))

    @staticmethod
    def _summary(item: Dict[str, Any]) -> ConversationSummary:
        return ConversationSummary(
            id=str(item["_id"]),
            session_id=item["sessionId"],
            created_at=int(item["createdAt"]),
            updated_at=int(item["updatedAt"]),
            last_message=item.get("lastMessage") or "",
        )


def create_store(config: StoreConfig) -> ConversationStore:
    if config.url:
        logger.info("Using document store at %s", config.url)
        return HttpConversationStore(config)
    logger.info("No store url configured; keeping conversations in memory")
    return InMemoryConversationStore()

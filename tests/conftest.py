"""Shared fixtures for the chat relay tests."""

from __future__ import annotations

import json
from typing import Dict, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient

from chat_relay import ChatRelayService, RelayConfig, create_app
from chat_relay.errors import UpstreamFailure
from chat_relay.llm_client import UpstreamProgress
from chat_relay.store import InMemoryConversationStore

CLIENT_KEY = "widget-secret"
ADMIN_KEY = "admin-secret"


class FakeLLMClient:
    """Stands in for ChatLLMClient and records what it was asked."""

    def __init__(
        self,
        tokens: Optional[List[str]] = None,
        *,
        fail_after: Optional[int] = None,
        buffered: bool = False,
    ) -> None:
        self.tokens = ["Hello", " there", "!"] if tokens is None else tokens
        self.fail_after = fail_after
        # when buffered, the whole reply counts as received before the first token
        self.buffered = buffered
        self.calls: List[List[Dict[str, str]]] = []
        self.closed = False
        self.exhausted = False

    def stream_completion(
        self, messages: List[Dict[str, str]], progress: Optional[UpstreamProgress] = None
    ) -> Iterator[str]:
        self.calls.append(messages)
        progress = progress if progress is not None else UpstreamProgress()
        try:
            if self.buffered:
                progress.finished = True
            for index, token in enumerate(self.tokens):
                if self.fail_after is not None and index >= self.fail_after:
                    raise UpstreamFailure("Completion request failed with status 502")
                yield token
            if self.fail_after is not None and self.fail_after >= len(self.tokens):
                raise UpstreamFailure("Completion request failed with status 502")
            progress.finished = True
            self.exhausted = True
        finally:
            self.closed = True


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, chunks: List[bytes], status_code: int = 200, text: str = "", raw: object = True) -> None:
        self.chunks = chunks
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self.text = text
        self.raw = object() if raw is True else raw
        self.closed = False

    def iter_content(self, chunk_size=None):
        yield from self.chunks

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.calls: List[Dict[str, object]] = []

    def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self.response


def sse_chunk(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}, ensure_ascii=False) + "\n\n"


def read_events(response) -> List[Dict[str, str]]:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(client_api_key=CLIENT_KEY, admin_api_key=ADMIN_KEY, environment="test")


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def service(config, store, llm) -> ChatRelayService:
    return ChatRelayService(config, store=store, client=llm)


@pytest.fixture
def client(config, service) -> Iterator[TestClient]:
    app = create_app(config, service=service)
    with TestClient(app) as test_client:
        yield test_client

"""Tests for the relay orchestration."""

import json
import logging

import pytest

from chat_relay import ChatRelayService
from chat_relay.auth import CredentialGate
from chat_relay.config import ChatLLMConfig
from chat_relay.errors import InvalidInput, NotFound, RateLimited, Unauthorized, UpstreamFailure
from chat_relay.events import DoneEvent, ErrorEvent, StartEvent, TokenEvent
from chat_relay.llm_client import ChatLLMClient
from chat_relay.rate_limit import RateLimiter
from chat_relay.schemas import ChatRequest
from chat_relay.service import RelayState

from conftest import CLIENT_KEY, FakeLLMClient, FakeResponse, FakeSession, sse_chunk


def body(**payload):
    return json.dumps(payload).encode("utf-8")


def request(session_id="abc", message="hello"):
    return ChatRequest.parse_obj({"sessionId": session_id, "message": message})


def stored(store, conversation_id):
    return [(item.role, item.content) for item in store.thread(conversation_id).messages]


def test_stream_events_order_and_persistence(service, store, llm):
    turn = service.prepare(request())
    events = list(service.stream_events(turn))

    assert events[0] == StartEvent(conversation_id=turn.conversation_id)
    assert events[1:-1] == [TokenEvent(token="Hello"), TokenEvent(token=" there"), TokenEvent(token="!")]
    assert events[-1] == DoneEvent(message="Hello there!", conversation_id=turn.conversation_id)
    assert stored(store, turn.conversation_id) == [("user", "hello"), ("assistant", "Hello there!")]
    assert turn.state is RelayState.SUCCEEDED


def test_upstream_receives_system_prompt_and_history_window(config, store):
    config.max_history_messages = 2
    llm = FakeLLMClient(["ok"])
    service = ChatRelayService(config, store=store, client=llm)
    list(service.stream_events(service.prepare(request(message="first"))))

    list(service.stream_events(service.prepare(request(message="second"))))

    assert llm.calls[1] == [
        {"role": "system", "content": config.system_prompt},
        {"role": "assistant", "content": "ok"},
        {"role": "user", "content": "second"},
    ]


def test_blank_upstream_output_uses_fallback(config, store):
    service = ChatRelayService(config, store=store, client=FakeLLMClient(["  ", "\n"]))
    turn = service.prepare(request())

    events = list(service.stream_events(turn))

    assert events[-1].message == config.fallback_message
    assert stored(store, turn.conversation_id)[-1] == ("assistant", config.fallback_message)


def test_upstream_failure_after_start_emits_single_error(config, store):
    llm = FakeLLMClient(["partial", "more"], fail_after=1)
    service = ChatRelayService(config, store=store, client=llm)
    turn = service.prepare(request())

    events = list(service.stream_events(turn))

    assert isinstance(events[0], StartEvent)
    assert events[1] == TokenEvent(token="partial")
    assert events[-1] == ErrorEvent(error="Internal server error")
    assert len(events) == 3
    # user turn is kept, no assistant turn recorded
    assert stored(store, turn.conversation_id) == [("user", "hello")]
    assert turn.state is RelayState.FAILED


def test_store_failure_while_persisting_emits_error(config, store, llm, monkeypatch):
    service = ChatRelayService(config, store=store, client=llm)
    turn = service.prepare(request())

    def broken_append(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "append", broken_append)
    events = list(service.stream_events(turn))

    assert events[-1] == ErrorEvent(error="Internal server error")
    assert not any(isinstance(event, DoneEvent) for event in events)


def test_consumer_disconnect_abandons_upstream_without_persisting(service, store, llm):
    turn = service.prepare(request())
    events = service.stream_events(turn)

    assert isinstance(next(events), StartEvent)
    assert next(events) == TokenEvent(token="Hello")
    events.close()

    assert llm.closed is True
    assert llm.exhausted is False
    assert stored(store, turn.conversation_id) == [("user", "hello")]


def test_complete_buffers_the_whole_reply(service, store):
    turn = service.prepare(request())

    result = service.complete(turn)

    assert result == {"conversationId": turn.conversation_id, "message": "Hello there!"}
    assert stored(store, turn.conversation_id)[-1] == ("assistant", "Hello there!")


def test_complete_raises_on_upstream_failure(config, store):
    service = ChatRelayService(config, store=store, client=FakeLLMClient(["x"], fail_after=0))

    with pytest.raises(UpstreamFailure):
        service.complete(service.prepare(request()))


def test_accept_checks_rate_limit_before_credentials(config, store, llm):
    service = ChatRelayService(config, store=store, client=llm, rate_limiter=RateLimiter(60, 1))
    service.accept("1.2.3.4", CLIENT_KEY, body(sessionId="abc", message="hi"))

    with pytest.raises(RateLimited) as excinfo:
        service.accept("1.2.3.4", "wrong", body(sessionId="abc", message="hi"))
    assert excinfo.value.retry_after >= 1


def test_accept_checks_credentials_before_body(service):
    with pytest.raises(Unauthorized):
        service.accept("1.2.3.4", "wrong", b"not json")


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"not json",
        b"[1, 2]",
        json.dumps({"sessionId": "abc"}).encode(),
        json.dumps({"sessionId": "", "message": "hi"}).encode(),
        json.dumps({"sessionId": "has space", "message": "hi"}).encode(),
        json.dumps({"sessionId": "a" * 129, "message": "hi"}).encode(),
        json.dumps({"sessionId": "abc", "message": ""}).encode(),
        json.dumps({"sessionId": "abc", "message": "   "}).encode(),
        json.dumps({"sessionId": "abc", "message": "x" * 4001}).encode(),
    ],
)
def test_invalid_bodies_are_rejected_without_side_effects(service, store, raw):
    with pytest.raises(InvalidInput) as excinfo:
        service.accept("1.2.3.4", CLIENT_KEY, raw)

    assert excinfo.value.details
    json.dumps(excinfo.value.details)
    assert store.list(page_limit=100).total == 0


def test_valid_body_produces_typed_request(service):
    chat_request = service.accept("1.2.3.4", CLIENT_KEY, body(sessionId="user:42.a_b-c", message="x" * 4000))

    assert chat_request.session_id == "user:42.a_b-c"
    assert len(chat_request.message) == 4000


def test_second_turn_reuses_conversation(service, store):
    first = service.prepare(request())
    list(service.stream_events(first))
    second = service.prepare(request(message="again"))
    list(service.stream_events(second))

    assert first.conversation_id == second.conversation_id
    assert store.list(page_limit=100).total == 1
    assert [role for role, _ in stored(store, first.conversation_id)] == ["user", "assistant", "user", "assistant"]


def test_admin_thread_lookup(service):
    with pytest.raises(NotFound):
        service.get_thread("0" * 32)
    with pytest.raises(InvalidInput):
        service.get_thread("not-a-key!")


def test_admin_list_limit_bounds(service):
    with pytest.raises(InvalidInput):
        service.list_conversations(0)
    with pytest.raises(InvalidInput):
        service.list_conversations(10_000)
    assert service.list_conversations(None) == {"conversations": [], "total": 0}


def test_injected_collaborators_are_kept_even_when_empty(config, store, llm):
    limiter = RateLimiter(60, 1)
    gate = CredentialGate(CLIENT_KEY)
    assert len(limiter) == 0

    service = ChatRelayService(config, store=store, client=llm, rate_limiter=limiter, gate=gate)

    assert service.rate_limiter is limiter
    assert service.gate is gate
    assert service.client is llm


def test_disconnect_after_upstream_finished_still_persists(config, store):
    llm = FakeLLMClient(buffered=True)
    service = ChatRelayService(config, store=store, client=llm)
    turn = service.prepare(request())
    events = service.stream_events(turn)

    assert isinstance(next(events), StartEvent)
    assert next(events) == TokenEvent(token="Hello")
    events.close()

    assert llm.closed is True
    assert stored(store, turn.conversation_id) == [("user", "hello"), ("assistant", "Hello there!")]
    assert turn.state is RelayState.PERSISTED


@pytest.mark.parametrize("consumed", [1, 2])
def test_disconnect_after_done_sentinel_persists_reply(config, store, consumed):
    body = (sse_chunk("Hi") + sse_chunk("!") + "data: [DONE]\n\n").encode("utf-8")
    response = FakeResponse([body])
    client = ChatLLMClient(ChatLLMConfig(api_key="sk-test"), session=FakeSession(response))
    service = ChatRelayService(config, store=store, client=client)
    turn = service.prepare(request())
    events = service.stream_events(turn)

    assert isinstance(next(events), StartEvent)
    for _ in range(consumed):
        assert isinstance(next(events), TokenEvent)
    events.close()

    assert response.closed is True
    assert stored(store, turn.conversation_id) == [("user", "hello"), ("assistant", "Hi!")]


def test_prepare_and_accept_record_each_stage(service, caplog):
    caplog.set_level(logging.DEBUG, logger="chat_relay.service")

    chat_request = service.accept("1.2.3.4", CLIENT_KEY, body(sessionId="abc", message="hi"))
    turn = service.prepare(chat_request)

    logged = caplog.text
    for state in (RelayState.ADMITTED, RelayState.AUTHENTICATED, RelayState.VALIDATED):
        assert state.value in logged
    assert f"{RelayState.VALIDATED.value} -> {RelayState.HISTORY_LOADED.value}" in logged
    assert turn.state is RelayState.HISTORY_LOADED

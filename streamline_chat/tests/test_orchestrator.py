from contextlib import contextmanager

import pytest

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.chat.orchestrator import RequestOrchestrator
from streamline_chat.domain.exceptions import ConcurrencyViolation, TransportError, ValidationError
from streamline_chat.domain.models import (
    Cancelled,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    Failed,
    Finalized,
    HistoryEntry,
)
from streamline_chat.protocol.frames import encode_done, encode_event


def _frames(*texts, terminal=None):
    reads = [encode_event(ChunkEvent(text=t)).encode() for t in texts]
    reads.append(encode_event(terminal or CompleteEvent()).encode())
    reads.append(encode_done().encode())
    return reads


class FakeTransport:
    name = "fake"

    def __init__(self, reads=None, open_error=None):
        self.reads = reads or []
        self.open_error = open_error
        self.calls = []
        self.closed = False

    @contextmanager
    def open(self, message, history, token):
        self.calls.append({"message": message, "history": history, "token": token})
        if self.open_error is not None:
            raise self.open_error
        try:
            yield iter(self.reads)
        finally:
            self.closed = True


def test_send_finalized_forwards_cumulative_text():
    transport = FakeTransport(_frames("Hel", "lo!"))
    updates = []
    outcome = RequestOrchestrator(transport).send("c1", " hello ", [], on_update=updates.append)
    assert outcome == Finalized(final_text="Hello!")
    assert updates == ["Hel", "Hello!"]
    assert transport.calls[0]["message"] == "hello"
    assert transport.closed


def test_send_normalizes_history_before_opening():
    transport = FakeTransport(_frames("ok"))
    raw = [
        {"role": "model", "content": "hi"},
        {"role": "user", "content": ""},
        {"role": "user", "content": "ok"},
        {"role": "model", "content": "sure"},
    ]
    RequestOrchestrator(transport).send("c1", "next", raw)
    assert transport.calls[0]["history"] == [
        HistoryEntry(role="user", content="ok"),
        HistoryEntry(role="model", content="sure"),
    ]


def test_cancel_before_any_chunk_is_cancelled_empty():
    transport = FakeTransport(_frames("never"))
    token = CancellationToken()
    token.cancel()
    updates = []
    outcome = RequestOrchestrator(transport).send("c1", "hello", [], on_update=updates.append, token=token)
    assert outcome == Cancelled(partial_text="")
    assert updates == []
    assert transport.closed


def test_cancel_mid_stream_keeps_partial_text():
    transport = FakeTransport(_frames("He", "llo", " world"))
    orchestrator = RequestOrchestrator(transport)

    def on_update(text):
        if text == "Hello":
            assert orchestrator.cancel("c1") is True

    outcome = orchestrator.send("c1", "hi", [], on_update=on_update)
    assert outcome == Cancelled(partial_text="Hello")
    assert not orchestrator.is_in_flight("c1")


def test_upstream_error_frame_maps_to_failed():
    transport = FakeTransport(_frames("pa", terminal=ErrorEvent(message="봇으로부터 응답을 받지 못했습니다.")))
    outcome = RequestOrchestrator(transport).send("c1", "hi", [])
    assert outcome == Failed(error_kind="upstream", message="봇으로부터 응답을 받지 못했습니다.", partial_text="pa")


def test_transport_failure_maps_to_failed():
    error = TransportError(code="HTTP_ERROR", message="전달된 메시지가 비어 있습니다.", http_status=400)
    outcome = RequestOrchestrator(FakeTransport(open_error=error)).send("c1", "hi", [])
    assert outcome == Failed(error_kind="transport", message="전달된 메시지가 비어 있습니다.")


def test_truncated_stream_maps_to_transport_failure():
    transport = FakeTransport([encode_event(ChunkEvent(text="half")).encode()])
    outcome = RequestOrchestrator(transport).send("c1", "hi", [])
    assert isinstance(outcome, Failed)
    assert outcome.error_kind == "transport"
    assert outcome.message == "stream ended unexpectedly"
    assert outcome.partial_text == "half"


def test_transport_error_after_cancel_is_cancellation():
    token = CancellationToken()

    def reads():
        yield encode_event(ChunkEvent(text="a")).encode()
        token.cancel()
        raise TransportError(code="NETWORK_ERROR", message="connection closed")

    outcome = RequestOrchestrator(FakeTransport(reads())).send("c1", "hi", [], token=token)
    assert outcome == Cancelled(partial_text="a")


def test_empty_message_is_rejected_before_opening():
    transport = FakeTransport(_frames("x"))
    orchestrator = RequestOrchestrator(transport)
    with pytest.raises(ValidationError):
        orchestrator.send("c1", "   ", [])
    assert transport.calls == []
    assert not orchestrator.is_in_flight("c1")


def test_second_send_for_same_conversation_is_rejected():
    orchestrator = RequestOrchestrator(FakeTransport(_frames("a", "b")))
    errors = []

    def on_update(text):
        with pytest.raises(ConcurrencyViolation) as exc_info:
            orchestrator.send("c1", "again", [])
        errors.append(exc_info.value.code)
        # 其他会话不受影响
        assert not orchestrator.is_in_flight("c2")

    outcome = orchestrator.send("c1", "hi", [], on_update=on_update)
    assert outcome == Finalized(final_text="ab")
    assert errors == ["REQUEST_IN_FLIGHT", "REQUEST_IN_FLIGHT"]
    assert not orchestrator.is_in_flight("c1")


def test_cancel_without_request_returns_false():
    assert RequestOrchestrator(FakeTransport()).cancel("c1") is False

import pytest

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.domain.exceptions import CancellationError, TransportError, UpstreamError
from streamline_chat.domain.models import ChunkEvent, CompleteEvent, ErrorEvent
from streamline_chat.protocol.decoder import StreamDecoder, decode_stream
from streamline_chat.protocol.frames import encode_done, encode_event


def _wire(*texts: str, terminal=None) -> bytes:
    body = "".join(encode_event(ChunkEvent(text=t)) for t in texts)
    body += encode_event(terminal or CompleteEvent())
    body += encode_done()
    return body.encode("utf-8")


def test_decode_single_read():
    assert list(decode_stream([_wire("Hel", "lo!")])) == ["Hel", "lo!"]


def test_round_trip_with_arbitrary_split_points():
    texts = ["안녕", "하세요", " 🙂 ", "done"]
    data = _wire(*texts)
    for offset in range(1, len(data)):
        reads = [data[:offset], data[offset:]]
        assert "".join(decode_stream(reads)) == "".join(texts)


def test_round_trip_byte_by_byte():
    texts = ["Hel", "lo!", "세계"]
    data = _wire(*texts)
    reads = [data[i:i + 1] for i in range(len(data))]
    assert list(decode_stream(reads)) == texts


def test_crlf_line_endings_are_normalized():
    data = _wire("a", "b").replace(b"\n", b"\r\n")
    # 把 \r 与 \n 切到两次读取里
    idx = data.index(b"\r\n")
    reads = [data[: idx + 1], data[idx + 1:]]
    assert list(decode_stream(reads)) == ["a", "b"]


def test_nothing_after_sentinel_is_yielded():
    data = _wire("x") + encode_event(ChunkEvent(text="garbage")).encode() + b"data: {broken"
    assert list(decode_stream([data])) == ["x"]


def test_sentinel_stops_reading_transport():
    reads_done = []

    def reads():
        yield _wire("x")
        reads_done.append("second read")
        yield b"never decoded"

    assert list(decode_stream(reads())) == ["x"]
    assert reads_done == []


def test_malformed_frame_is_skipped():
    data = b"data: {oops\n\n" + _wire("ok")
    assert list(decode_stream([data])) == ["ok"]


def test_error_frame_raises_after_prior_chunks():
    data = _wire("par", terminal=ErrorEvent(message="quota exceeded"))
    received = []
    with pytest.raises(UpstreamError) as exc_info:
        for text in decode_stream([data]):
            received.append(text)
    assert received == ["par"]
    assert exc_info.value.message == "quota exceeded"


def test_stream_ending_without_terminal_frame_is_transport_error():
    data = encode_event(ChunkEvent(text="half")).encode()
    received = []
    with pytest.raises(TransportError) as exc_info:
        for text in decode_stream([data]):
            received.append(text)
    assert received == ["half"]
    assert exc_info.value.message == "stream ended unexpectedly"


def test_complete_without_sentinel_ends_normally():
    data = (encode_event(ChunkEvent(text="a")) + encode_event(CompleteEvent())).encode()
    assert list(decode_stream([data])) == ["a"]


def test_last_frame_without_trailing_blank_line():
    data = _wire("a").rstrip(b"\n")
    assert list(decode_stream([data])) == ["a"]


def test_cancelled_token_is_checked_before_each_read():
    token = CancellationToken()
    first = encode_event(ChunkEvent(text="one")).encode()
    second = encode_event(ChunkEvent(text="two")).encode()
    received = []
    with pytest.raises(CancellationError):
        for text in StreamDecoder().decode([first, second], token):
            received.append(text)
            token.cancel()
    assert received == ["one"]


def test_decoded_sequence_is_not_restartable():
    events = decode_stream([_wire("a")])
    assert list(events) == ["a"]
    assert list(events) == []

import pytest

from streamline_chat.domain.exceptions import UpstreamError, ValidationError
from streamline_chat.domain.models import HistoryEntry
from streamline_chat.providers.completions_upstream import CompletionsUpstream


class SettingsStub:
    upstream_api_key = "k" * 16
    upstream_base_url = "https://api.moonshot.cn/v1"
    upstream_model = "kimi-k2-turbo-preview"
    http_timeout = 1.0


class FakeResponse:
    def __init__(self, lines, status_code=200, text=""):
        self._lines = list(lines)
        self.status_code = status_code
        self.text = text

    def read(self):
        return self.text.encode()

    def iter_lines(self):
        for line in self._lines:
            yield line


def _install_client(monkeypatch, response):
    captured = {}

    class StreamContext:
        def __enter__(self):
            return response

        def __exit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            # 未在流式测试中使用
            raise AssertionError("post should not be called in stream test")

        def stream(self, method, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return StreamContext()

    monkeypatch.setattr("httpx.Client", Client)
    return captured


def test_completions_session_streams_delta_content(monkeypatch):
    stream_lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "Hel"}}]}',
        "",
        "data: {broken",
        'data: {"choices": [{"index": 0, "delta": {"content": "lo!"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
    ]
    captured = _install_client(monkeypatch, FakeResponse(stream_lines))
    upstream = CompletionsUpstream(SettingsStub())
    session = upstream.create_session("sys", [HistoryEntry(role="user", content="a"), HistoryEntry(role="model", content="b")])
    assert list(session.send_stream("hello")) == ["Hel", "lo!"]
    assert captured["url"] == "https://api.moonshot.cn/v1/chat/completions"
    assert captured["json"]["stream"] is True
    assert captured["json"]["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "hello"},
    ]
    assert captured["headers"]["Authorization"] == f"Bearer {'k' * 16}"


def test_completions_missing_key_is_rejected():
    class NoKey(SettingsStub):
        upstream_api_key = None

    with pytest.raises(ValidationError):
        CompletionsUpstream(NoKey()).create_session("sys", [])


def test_completions_invalid_key(monkeypatch):
    _install_client(monkeypatch, FakeResponse([], status_code=401, text="Invalid Authentication"))
    session = CompletionsUpstream(SettingsStub()).create_session("sys", [])
    with pytest.raises(UpstreamError) as exc_info:
        list(session.send_stream("hi"))
    assert exc_info.value.code == "INVALID_API_KEY"


def test_completions_server_error(monkeypatch):
    _install_client(monkeypatch, FakeResponse([], status_code=500, text="overloaded"))
    session = CompletionsUpstream(SettingsStub()).create_session("sys", [])
    with pytest.raises(UpstreamError) as exc_info:
        list(session.send_stream("hi"))
    assert exc_info.value.message == "overloaded"
    assert exc_info.value.http_status == 500

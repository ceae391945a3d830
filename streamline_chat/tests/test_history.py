from streamline_chat.chat.history import normalize_history
from streamline_chat.domain.models import HistoryEntry, Message


def test_normalize_drops_leading_model_and_empty_entries():
    raw = [
        {"role": "model", "content": "hi"},
        {"role": "user", "content": ""},
        {"role": "user", "content": "ok"},
        {"role": "model", "content": "sure"},
    ]
    assert normalize_history(raw) == [
        HistoryEntry(role="user", content="ok"),
        HistoryEntry(role="model", content="sure"),
    ]


def test_normalize_drops_malformed_entries_and_trims():
    raw = [
        None,
        "user: hi",
        {"role": "system", "content": "x"},
        {"role": "user", "content": 42},
        {"role": "user"},
        {"role": "user", "content": "  first  "},
        {"role": "model", "content": "   "},
        {"role": "model", "content": "answer\n"},
    ]
    assert normalize_history(raw) == [
        HistoryEntry(role="user", content="first"),
        HistoryEntry(role="model", content="answer"),
    ]


def test_normalize_keeps_order_without_merging():
    raw = [
        {"role": "user", "content": "a"},
        {"role": "user", "content": "a"},
        {"role": "model", "content": "b"},
        {"role": "model", "content": "c"},
    ]
    assert [e.content for e in normalize_history(raw)] == ["a", "a", "b", "c"]


def test_normalize_accepts_messages_and_drops_greeting_and_placeholder():
    raw = [
        Message(id="init-message", role="model", content="안녕하세요!"),
        Message(id="user-1", role="user", content="hello"),
        Message(id="model-1", role="model", content="", status="sending"),
    ]
    assert normalize_history(raw) == [HistoryEntry(role="user", content="hello")]


def test_normalize_non_list_input():
    assert normalize_history(None) == []
    assert normalize_history({"role": "user", "content": "x"}) == []

import json
import tempfile
from pathlib import Path

import pytest

from streamline_chat.infrastructure.storage.json_store import JsonConversationStore
from streamline_chat.domain.conversation import Conversation
from streamline_chat.domain.exceptions import BusinessError
from streamline_chat.domain.models import Message


def _conversations():
    return [
        Conversation(
            id="c1",
            title="hello",
            messages=[
                Message(id="init-message", role="model", content="안녕하세요!"),
                Message(id="u1", role="user", content="hello", timestamp=10, status="delivered"),
                Message(id="m1", role="model", content="Hello!", timestamp=11, status="delivered"),
            ],
            updated_at=11,
        ),
        Conversation(id="c2", title="새 대화", messages=[], updated_at=50),
    ]


def test_json_store_save_and_load_round_trip():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage", key="chat_conversations")
        convs = _conversations()
        store.save(convs)
        assert store.path.name == "chat_conversations.json"
        assert store.load() == convs
        store.save(list(reversed(convs)))
        loaded = store.load()
        assert sorted(loaded, key=lambda c: c.id) == sorted(convs, key=lambda c: c.id)


def test_json_store_save_overwrites():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d), key="k")
        store.save(_conversations())
        store.save([])
        assert store.load() == []
        assert not list(Path(d).glob("*.tmp"))


def test_json_store_load_missing_returns_empty():
    with tempfile.TemporaryDirectory() as d:
        assert JsonConversationStore(root=Path(d), key="k").load() == []


@pytest.mark.parametrize("raw", ["{not json", '{"id": "c1"}', "null", '"text"'])
def test_json_store_load_tolerates_garbage(raw):
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d), key="k")
        store.path.write_text(raw, encoding="utf-8")
        assert store.load() == []


def test_json_store_skips_unreadable_entries():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d), key="k")
        good = _conversations()[0].to_dict()
        store.path.write_text(
            json.dumps([good, 3, {"title": "no id"}, {"id": "c9", "messages": [{"id": "x", "role": "bot", "content": ""}]}]),
            encoding="utf-8",
        )
        loaded = store.load()
        assert [c.id for c in loaded] == ["c1"]


def test_json_store_rename_and_delete():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d), key="k")
        store.save(_conversations())
        store.rename_conversation("c1", "renamed")
        assert {c.id: c.title for c in store.load()}["c1"] == "renamed"
        store.delete_conversation("c2")
        assert [c.id for c in store.load()] == ["c1"]
        with pytest.raises(BusinessError):
            store.delete_conversation("c2")

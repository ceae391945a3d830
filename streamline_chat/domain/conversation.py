from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4
import time

from .models import Message


DEFAULT_TITLE = "새 대화"
GREETING_MESSAGE_ID = "init-message"
PREVIEW_PLACEHOLDER = "아직 메시지가 없습니다. 새 대화를 시작해보세요!"


@dataclass
class Conversation:
    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        messages = data.get("messages") or []
        if not isinstance(messages, list):
            raise ValueError("messages must be a list")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            messages=[Message.from_dict(m) for m in messages],
            updated_at=int(data.get("updatedAt") or 0),
        )

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


class ConversationStore(Protocol):
    def load(self) -> List[Conversation]:
        ...

    def save(self, conversations: Iterable[Conversation]) -> None:
        ...


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id(role: str) -> str:
    return f"{role}-{uuid4().hex}"


def new_conversation(greeting: str) -> Conversation:
    """新建会话，首条消息为固定 id 的问候语。"""

    return Conversation(
        id=f"c-{uuid4().hex}",
        title=DEFAULT_TITLE,
        messages=[Message(id=GREETING_MESSAGE_ID, role="model", content=greeting)],
        updated_at=now_ms(),
    )


def derive_title(messages: Iterable[Message], max_length: int = 30) -> str:
    """取第一条非空 user 消息作为标题，超长时截断并追加 "..."。"""

    for m in messages:
        if m.role != "user":
            continue
        text = m.content.strip()
        if not text:
            continue
        return f"{text[:max_length]}..." if len(text) > max_length else text
    return DEFAULT_TITLE


def preview_text(conversation: Conversation, limit: int = 70) -> str:
    """会话列表中的预览文本：最后一条有内容的消息。"""

    for m in reversed(conversation.messages):
        if m.content.strip():
            text = m.content
            return f"{text[:limit]}..." if len(text) > limit else text
    return PREVIEW_PLACEHOLDER


def sort_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

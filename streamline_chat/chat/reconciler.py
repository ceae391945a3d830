"""会话状态协调器。

每个在途的 model 消息（占位消息）都经历如下状态::

    pending -> streaming -> finalized | discarded

- pending: 用户消息追加后立即追加一条空的占位消息，尚未持久化。
- streaming: 每次收到累计文本就整体替换占位消息内容（只增不减）。
- finalized: 内容锁定、必要时推导标题、刷新 updatedAt 并持久化。
- discarded: 没有任何文本时移除占位消息（保留用户消息）并持久化。

持久化的永远是不含占位消息的快照，保证落盘状态与用户看到的一致。
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Literal

from streamline_chat.domain.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationStore,
    derive_title,
    new_conversation,
    new_message_id,
    now_ms,
    sort_conversations,
)
from streamline_chat.domain.exceptions import BusinessError, ConcurrencyViolation, ValidationError
from streamline_chat.domain.models import Failed, Message, Outcome, outcome_text
from streamline_chat.infrastructure.logging.logger import log_event


TurnState = Literal["pending", "streaming", "finalized", "discarded"]


@dataclass
class PendingTurn:
    """一轮对话：用户消息 + 与之配对的占位消息。"""

    conversation_id: str
    user_message_id: str
    placeholder_id: str
    state: TurnState = "pending"

    @property
    def settled(self) -> bool:
        return self.state in ("finalized", "discarded")


class ConversationReconciler:
    def __init__(self, store: ConversationStore, greeting: str, title_max_length: int = 30):
        self._store = store
        self._greeting = greeting
        self._title_max_length = title_max_length
        self._lock = threading.RLock()
        self._conversations: Dict[str, Conversation] = {}
        self._turns: Dict[str, PendingTurn] = {}

    # ---- 会话集合 ----

    def load(self) -> List[Conversation]:
        with self._lock:
            self._conversations = {c.id: c for c in self._store.load()}
            self._turns.clear()
            return self.conversations()

    def conversations(self) -> List[Conversation]:
        """按 updatedAt 倒序（最近活跃在前）。"""

        with self._lock:
            return sort_conversations(self._conversations.values())

    def get(self, conversation_id: str) -> Conversation:
        with self._lock:
            conv = self._conversations.get(conversation_id)
        if conv is None:
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        return conv

    def new_conversation(self) -> Conversation:
        """新建只含问候语的会话，不立即落盘。"""

        conv = new_conversation(self._greeting)
        with self._lock:
            self._conversations[conv.id] = conv
        return conv

    def rename(self, conversation_id: str, title: str) -> Conversation:
        """用户手动命名；非默认标题之后不会再被自动推导覆盖。"""

        title = title.strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="title must not be empty")
        with self._lock:
            conv = self.get(conversation_id)
            conv.title = title
            self._touch(conv)
            self._persist()
        return conv

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            if conversation_id in self._turns:
                raise ConcurrencyViolation(
                    code="REQUEST_IN_FLIGHT",
                    message="cannot delete a conversation while a request is in flight",
                    http_status=409,
                )
            self.get(conversation_id)
            del self._conversations[conversation_id]
            self._persist()

    def history_for(self, conversation_id: str) -> List[Message]:
        """返回可用于回放的历史消息（不含占位消息）。"""

        with self._lock:
            conv = self.get(conversation_id)
            turn = self._turns.get(conversation_id)
            skip = turn.placeholder_id if turn else None
            return [replace(m) for m in conv.messages if m.id != skip]

    # ---- 单轮状态机 ----

    def begin_turn(self, conversation_id: str, user_text: str) -> PendingTurn:
        text = user_text.strip() if isinstance(user_text, str) else ""
        if not text:
            raise ValidationError(code="EMPTY_MESSAGE", message="message must not be empty")
        with self._lock:
            conv = self.get(conversation_id)
            if conversation_id in self._turns:
                raise ConcurrencyViolation(
                    code="REQUEST_IN_FLIGHT",
                    message="a request is already in flight for this conversation",
                    http_status=409,
                    conversation_id=conversation_id,
                )
            ts = now_ms()
            user_msg = Message(id=self._unique_id(conv, "user"), role="user", content=text, timestamp=ts, status="sending")
            conv.messages.append(user_msg)
            placeholder = Message(id=self._unique_id(conv, "model"), role="model", content="", timestamp=ts, status="sending")
            conv.messages.append(placeholder)
            turn = PendingTurn(
                conversation_id=conversation_id,
                user_message_id=user_msg.id,
                placeholder_id=placeholder.id,
            )
            self._turns[conversation_id] = turn
            return turn

    def apply_update(self, turn: PendingTurn, cumulative_text: str) -> None:
        """用累计全文替换占位消息内容；内容只能增长。"""

        with self._lock:
            placeholder = self._placeholder(turn)
            if not cumulative_text.startswith(placeholder.content):
                raise ValidationError(
                    code="CONTENT_REWRITE",
                    message="streamed content may only be appended",
                    conversation_id=turn.conversation_id,
                )
            placeholder.content = cumulative_text
            turn.state = "streaming"

    def settle(self, turn: PendingTurn, outcome: Outcome) -> Conversation:
        with self._lock:
            placeholder = self._placeholder(turn)
            conv = self.get(turn.conversation_id)
            user_msg = conv.find_message(turn.user_message_id)
            text = outcome_text(outcome) or placeholder.content
            # 传输失败一律丢弃占位消息，只有上游错误保留部分文本
            if isinstance(outcome, Failed) and outcome.error_kind != "upstream":
                text = ""

            if text:
                placeholder.content = text
                placeholder.status = "error" if isinstance(outcome, Failed) else "delivered"
                turn.state = "finalized"
            else:
                conv.messages = [m for m in conv.messages if m.id != placeholder.id]
                turn.state = "discarded"
            if user_msg is not None:
                user_msg.status = "error" if isinstance(outcome, Failed) and not text else "delivered"

            if not conv.title or conv.title == DEFAULT_TITLE:
                conv.title = derive_title(conv.messages, self._title_max_length)
            self._touch(conv)
            del self._turns[turn.conversation_id]
            self._persist()

            log_event(
                logging.INFO,
                "Turn settled",
                {"conversation_id": conv.id},
                outcome=type(outcome).__name__,
                state=turn.state,
                chars=len(text),
            )
            return conv

    # ---- 内部工具 ----

    def _placeholder(self, turn: PendingTurn) -> Message:
        if turn.settled or self._turns.get(turn.conversation_id) is not turn:
            raise ValidationError(code="TURN_SETTLED", message="turn is no longer in flight")
        placeholder = self.get(turn.conversation_id).find_message(turn.placeholder_id)
        if placeholder is None:
            raise ValidationError(code="PLACEHOLDER_MISSING", message=turn.placeholder_id)
        return placeholder

    @staticmethod
    def _unique_id(conv: Conversation, role: str) -> str:
        used = {m.id for m in conv.messages}
        mid = new_message_id(role)
        while mid in used:
            mid = new_message_id(role)
        return mid

    @staticmethod
    def _touch(conv: Conversation) -> None:
        # 同一毫秒内多次更新时也保证严格递增
        conv.updated_at = max(now_ms(), conv.updated_at + 1)

    def _persist(self) -> None:
        self._store.save(self._snapshot())

    def _snapshot(self) -> List[Conversation]:
        """已 settle 状态的会话集合快照：在途轮次的用户消息与占位消息都不落盘。"""

        in_flight = set()
        for t in self._turns.values():
            in_flight.update((t.user_message_id, t.placeholder_id))
        return [
            Conversation(
                id=conv.id,
                title=conv.title,
                messages=[replace(m) for m in conv.messages if m.id not in in_flight],
                updated_at=conv.updated_at,
            )
            for conv in self._conversations.values()
        ]

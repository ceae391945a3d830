"""对外 API 服务模块。

ChatService 把 Reconciler、Orchestrator 与传输层串成完整的一轮对话，
并提供简化的函数接口供 UI 层调用。
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.chat.orchestrator import RequestOrchestrator
from streamline_chat.chat.reconciler import ConversationReconciler
from streamline_chat.config.settings import settings
from streamline_chat.domain.conversation import Conversation, ConversationStore, preview_text
from streamline_chat.domain.exceptions import ConcurrencyViolation
from streamline_chat.domain.models import Cancelled, Failed, Outcome
from streamline_chat.infrastructure.logging.logger import log_event, logger
from streamline_chat.infrastructure.storage.json_store import JsonConversationStore
from streamline_chat.providers import create_transport
from streamline_chat.providers.base import ChatTransport


@dataclass
class TurnResult:
    """一轮对话 settle 之后的结果。

    - outcome: Finalized / Cancelled / Failed。
    - conversation: 已持久化的会话。
    - error: 需要展示给用户的错误信息；取消不算错误，为 None。
    """

    outcome: Outcome
    conversation: Conversation
    error: Optional[str] = None


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        transport: ChatTransport,
        greeting: Optional[str] = None,
        title_max_length: Optional[int] = None,
    ):
        self.reconciler = ConversationReconciler(
            store,
            greeting=greeting or settings.greeting_text,
            title_max_length=title_max_length or settings.title_max_length,
        )
        self.orchestrator = RequestOrchestrator(transport)
        self.reconciler.load()

    def send_message(
        self,
        conversation_id: str,
        user_input: str,
        on_update: Optional[Callable[[str], None]] = None,
        token: Optional[CancellationToken] = None,
    ) -> TurnResult:
        """执行完整的一轮对话：begin -> 流式更新 -> settle。

        Raises:
            ValidationError: 消息为空，不会修改任何状态。
            ConcurrencyViolation: 该会话已有请求在进行中，不会修改任何状态。
        """

        if self.orchestrator.is_in_flight(conversation_id):
            raise ConcurrencyViolation(
                code="REQUEST_IN_FLIGHT",
                message="a request is already in flight for this conversation",
                http_status=409,
                conversation_id=conversation_id,
            )
        history = self.reconciler.history_for(conversation_id)
        turn = self.reconciler.begin_turn(conversation_id, user_input)

        def _update(text: str) -> None:
            self.reconciler.apply_update(turn, text)
            if on_update is not None:
                on_update(text)

        try:
            outcome = self.orchestrator.send(
                conversation_id,
                user_input,
                history,
                on_update=_update,
                token=token,
            )
        except Exception as e:
            # 占位消息必须在异常离开前被解决
            log_event(logging.ERROR, "Turn aborted", {"conversation_id": conversation_id}, error=str(e))
            self.reconciler.settle(turn, Failed(error_kind="transport", message=str(e)))
            raise

        conv = self.reconciler.settle(turn, outcome)
        error = outcome.message if isinstance(outcome, Failed) else None
        return TurnResult(outcome=outcome, conversation=conv, error=error)

    def stop(self, conversation_id: str) -> bool:
        return self.orchestrator.cancel(conversation_id)

    def new_conversation(self) -> Conversation:
        return self.reconciler.new_conversation()

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        return self.reconciler.rename(conversation_id, title)

    def delete_conversation(self, conversation_id: str) -> None:
        self.reconciler.delete(conversation_id)

    def list_conversations(self) -> list[Conversation]:
        return self.reconciler.conversations()


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _service
    if _service is None:
        _service = ChatService(
            store=JsonConversationStore(root=settings.storage_root, key=settings.storage_key),
            transport=create_transport(),
        )
    return _service


def run_chat(
    user_input: str,
    conversation_id: Optional[str] = None,
    on_update: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """运行一轮聊天对话。

    Args:
        user_input: 用户输入内容
        conversation_id: 会话ID（可选，不提供则创建新会话）
        on_update: 流式回调，参数为当前累计的回答全文

    Returns:
        包含会话ID、结果类型、回答内容与错误信息的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    service = get_default_service()
    if conversation_id is None:
        conversation_id = service.new_conversation().id
    try:
        result = service.send_message(conversation_id, user_input, on_update=on_update)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise

    last = result.conversation.messages[-1] if result.conversation.messages else None
    return {
        "conversation_id": result.conversation.id,
        "title": result.conversation.title,
        "outcome": type(result.outcome).__name__.lower(),
        "cancelled": isinstance(result.outcome, Cancelled),
        "answer": last.content if last is not None and last.role == "model" else "",
        "error": result.error,
        "updated_at": result.conversation.updated_at,
    }


def stop_response(conversation_id: str) -> bool:
    """请求停止指定会话正在生成的回答。"""
    return get_default_service().stop(conversation_id)


def list_conversations() -> list[Dict[str, Any]]:
    """列出所有会话（最近活跃在前）。

    Returns:
        会话列表，每项包含 id, title, preview, message_count, updated_at
    """
    return [
        {
            "id": c.id,
            "title": c.title,
            "preview": preview_text(c),
            "message_count": len(c.messages),
            "updated_at": c.updated_at,
        }
        for c in get_default_service().list_conversations()
    ]


def get_conversation_messages(conversation_id: str) -> list[Dict[str, Any]]:
    """获取会话的所有消息。"""
    conv = get_default_service().reconciler.get(conversation_id)
    return [m.to_dict() for m in conv.messages]

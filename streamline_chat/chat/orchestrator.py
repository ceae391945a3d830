"""请求编排器。

负责单个在途请求的完整生命周期：发出请求、驱动 StreamDecoder、
把累计文本实时推给调用方（通常是 ConversationReconciler），并支持协作式取消。

传输、解码与上游错误都在这里被折叠为三种结果之一：

- Finalized(final_text): 流正常结束。
- Cancelled(partial_text): 用户取消，partial_text 可以为空；这不是错误。
- Failed(error_kind, message): transport / upstream 错误；整包解析失败归为 transport。
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import uuid4

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.chat.history import normalize_history
from streamline_chat.domain.exceptions import (
    CancellationError,
    ConcurrencyViolation,
    ParseError,
    TransportError,
    UpstreamError,
    ValidationError,
)
from streamline_chat.domain.models import Cancelled, Failed, Finalized, Outcome, RequestContext
from streamline_chat.infrastructure.logging.logger import log_event
from streamline_chat.protocol.decoder import StreamDecoder
from streamline_chat.providers.base import ChatTransport


UpdateCallback = Callable[[str], None]


class RequestOrchestrator:
    def __init__(self, transport: ChatTransport, decoder: Optional[StreamDecoder] = None):
        self._transport = transport
        self._decoder = decoder or StreamDecoder()
        self._lock = threading.Lock()
        self._in_flight: Dict[str, RequestContext] = {}

    def is_in_flight(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._in_flight

    def cancel(self, conversation_id: str) -> bool:
        """请求取消指定会话的在途请求。没有在途请求时返回 False。"""

        with self._lock:
            ctx = self._in_flight.get(conversation_id)
        if ctx is None:
            return False
        ctx.token.cancel()
        return True

    def send(
        self,
        conversation_id: str,
        user_text: str,
        prior_history: Iterable[Any],
        on_update: Optional[UpdateCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Outcome:
        """发送一条用户消息并阻塞直到请求 settle。

        Args:
            conversation_id: 目标会话 ID。
            user_text: 用户输入（首尾空白会被去掉）。
            prior_history: 之前的消息，交给 normalize_history 处理。
            on_update: 每收到一个 chunk 后以累计全文回调。
            token: 可选的外部取消标记，不传则内部创建。

        Raises:
            ConcurrencyViolation: 该会话已有请求在进行中。
            ValidationError: 消息为空。
        """

        ctx = self._acquire(conversation_id, token or CancellationToken())
        try:
            message = user_text.strip() if isinstance(user_text, str) else ""
            if not message:
                raise ValidationError(code="EMPTY_MESSAGE", message="message must not be empty")
            return self._run(ctx, message, list(prior_history or []), on_update)
        finally:
            self._release(conversation_id)

    def _acquire(self, conversation_id: str, token: CancellationToken) -> RequestContext:
        with self._lock:
            if conversation_id in self._in_flight:
                raise ConcurrencyViolation(
                    code="REQUEST_IN_FLIGHT",
                    message="a request is already in flight for this conversation",
                    http_status=409,
                    conversation_id=conversation_id,
                )
            ctx = RequestContext(conversation_id=conversation_id, token=token)
            self._in_flight[conversation_id] = ctx
            return ctx

    def _release(self, conversation_id: str) -> None:
        with self._lock:
            self._in_flight.pop(conversation_id, None)

    def _run(
        self,
        ctx: RequestContext,
        message: str,
        prior_history: list,
        on_update: Optional[UpdateCallback],
    ) -> Outcome:
        start_time = time.time()
        history = normalize_history(prior_history)
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": ctx.conversation_id,
            "transport": self._transport.name,
        }
        log_event(logging.INFO, "Opening stream", log_ctx, history_len=len(history))

        outcome: Outcome
        try:
            with self._transport.open(message, history, ctx.token) as byte_stream:
                for text in self._decoder.decode(byte_stream, ctx.token):
                    ctx.accumulated.append(text)
                    if on_update is not None:
                        on_update(ctx.text)
                    ctx.token.raise_if_cancelled()
            outcome = Finalized(final_text=ctx.text)
        except CancellationError:
            outcome = Cancelled(partial_text=ctx.text)
        except UpstreamError as e:
            outcome = Failed(error_kind="upstream", message=e.message, partial_text=ctx.text)
        except ParseError as e:
            # 整个响应体无法解析按传输错误处理
            outcome = Failed(error_kind="transport", message=e.message, partial_text=ctx.text)
        except TransportError as e:
            if ctx.token.cancelled:
                outcome = Cancelled(partial_text=ctx.text)
            else:
                outcome = Failed(error_kind="transport", message=e.message, partial_text=ctx.text)

        level = logging.WARNING if isinstance(outcome, Failed) else logging.INFO
        log_event(
            level,
            "Stream settled",
            log_ctx,
            outcome=type(outcome).__name__,
            chars=len(ctx.text),
            chunks=len(ctx.accumulated),
            duration_ms=int((time.time() - start_time) * 1000),
            error=getattr(outcome, "message", None),
        )
        return outcome

"""流式协议的生产端。

把一次聊天请求转换为事件流响应：

1. 校验请求体（message 必须是非空字符串），历史交给 normalize_history 处理。
2. 用 system prompt + 历史创建上游会话，发送本轮消息。
3. 每段非空增量写成一个 chunk 帧；结束时写 complete 帧，出错时写 error 帧；
   两种情况最后都写 ``[DONE]`` 哨兵。

流开始之前出现的错误以 JSON ``{"error": "..."}`` + 4xx/5xx 返回。
返回值与具体 Web 框架无关，由调用方负责写出状态码、响应头与 body。
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Union

from streamline_chat.chat.history import normalize_history
from streamline_chat.domain.exceptions import BusinessError
from streamline_chat.domain.models import ChunkEvent, CompleteEvent, ErrorEvent
from streamline_chat.infrastructure.logging.logger import log_event, logger
from streamline_chat.prompts import load_system_prompt
from streamline_chat.protocol.frames import encode_done, encode_event
from streamline_chat.providers.base import UpstreamModel


MISSING_KEY_MESSAGE = "API 키가 설정되지 않았습니다."
EMPTY_MESSAGE = "전달된 메시지가 비어 있습니다."
INVALID_KEY_MESSAGE = "잘못된 API 키입니다. 설정을 확인해주세요."
NO_RESPONSE_MESSAGE = "봇으로부터 응답을 받지 못했습니다. 다시 시도해주세요."
UNPARSABLE_BODY_MESSAGE = "요청 본문을 해석할 수 없습니다."
METHOD_NOT_ALLOWED_MESSAGE = "허용되지 않은 메서드입니다. POST를 사용해주세요."

JSON_HEADERS = {"Content-Type": "application/json; charset=utf-8"}
SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


@dataclass
class ResponderResult:
    """框架无关的响应：状态码、响应头与（可能是惰性的）字节块序列。"""

    status: int
    headers: Dict[str, str]
    body: Iterable[bytes] = field(default_factory=list)

    @property
    def is_stream(self) -> bool:
        return self.headers.get("Content-Type", "").startswith("text/event-stream")


def json_error(status: int, message: str) -> ResponderResult:
    body = json.dumps({"error": message}, ensure_ascii=False).encode("utf-8")
    return ResponderResult(status=status, headers=dict(JSON_HEADERS), body=[body])


def parse_request_body(raw: Union[bytes, str, None]) -> Dict[str, Any]:
    """解析请求体；空请求体视为 {}。"""

    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BusinessError(code="BAD_REQUEST_BODY", message=UNPARSABLE_BODY_MESSAGE, http_status=400)
    if not isinstance(data, dict):
        raise BusinessError(code="BAD_REQUEST_BODY", message=UNPARSABLE_BODY_MESSAGE, http_status=400)
    return data


def user_facing_message(exc: Exception) -> str:
    """把上游异常翻译为固定的用户提示。"""

    if "API key not valid" in str(exc) or getattr(exc, "code", None) == "INVALID_API_KEY":
        return INVALID_KEY_MESSAGE
    return NO_RESPONSE_MESSAGE


class ChatResponder:
    def __init__(self, upstream: Optional[UpstreamModel], system_prompt: Optional[str] = None):
        self._upstream = upstream
        self._system_prompt = (system_prompt or "").strip() or load_system_prompt()

    def handle(self, method: str, raw_body: Union[bytes, str, None]) -> ResponderResult:
        """完整的请求入口：方法检查 + 请求体解析 + respond。"""

        method = method.upper()
        if method == "OPTIONS":
            return ResponderResult(status=204, headers={})
        if method != "POST":
            return json_error(405, METHOD_NOT_ALLOWED_MESSAGE)
        try:
            payload = parse_request_body(raw_body)
        except BusinessError as e:
            logger.warning("Failed to parse request body", extra={"extra": {"error": e.code}})
            return json_error(e.http_status, e.message)
        return self.respond(payload)

    def respond(self, payload: Mapping[str, Any]) -> ResponderResult:
        if self._upstream is None:
            return json_error(500, MISSING_KEY_MESSAGE)

        message = payload.get("message") if isinstance(payload, Mapping) else None
        message = message.strip() if isinstance(message, str) else ""
        if not message:
            return json_error(400, EMPTY_MESSAGE)

        history = normalize_history(payload.get("history"))
        log_ctx = {"upstream": self._upstream.name, "history_len": len(history)}
        try:
            session = self._upstream.create_session(self._system_prompt, history)
            deltas = iter(session.send_stream(message))
        except Exception as exc:
            log_event(logging.ERROR, "Upstream call failed before stream", log_ctx, error=str(exc))
            return json_error(500, user_facing_message(exc))

        log_event(logging.INFO, "Streaming response", log_ctx)
        return ResponderResult(status=200, headers=dict(SSE_HEADERS), body=self._frames(deltas, log_ctx))

    def _frames(self, deltas: Iterator[str], log_ctx: Dict[str, Any]) -> Iterator[bytes]:
        chunk_count = 0
        try:
            for delta in deltas:
                if not delta:
                    continue
                chunk_count += 1
                yield encode_event(ChunkEvent(text=delta)).encode("utf-8")
            yield encode_event(CompleteEvent()).encode("utf-8")
            log_event(logging.INFO, "Stream complete", log_ctx, chunks=chunk_count)
        except Exception as exc:
            log_event(logging.ERROR, "Upstream call failed mid-stream", log_ctx, chunks=chunk_count, error=str(exc))
            yield encode_event(ErrorEvent(message=user_facing_message(exc))).encode("utf-8")
        finally:
            close = getattr(deltas, "close", None)
            if close is not None:
                close()
        yield encode_done().encode("utf-8")

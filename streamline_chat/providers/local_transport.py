"""进程内传输：直接调用 ChatResponder，不经过网络。

客户端与服务端在同一进程内运行时使用，字节流与 HTTP 传输完全一致，
因此解码、取消与错误处理路径都与真实网络场景相同。
"""

import json
from contextlib import contextmanager
from typing import Iterator, List

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.domain.exceptions import TransportError
from streamline_chat.domain.models import HistoryEntry
from streamline_chat.server.responder import ChatResponder


class LocalChatTransport:
    name = "local"

    def __init__(self, responder: ChatResponder):
        self._responder = responder

    @contextmanager
    def open(
        self,
        message: str,
        history: List[HistoryEntry],
        token: CancellationToken,
    ) -> Iterator[Iterator[bytes]]:
        raw_body = json.dumps({"message": message, "history": [h.to_dict() for h in history]}, ensure_ascii=False)
        result = self._responder.handle("POST", raw_body.encode("utf-8"))
        if result.status >= 400 or not result.is_stream:
            raise TransportError(code="HTTP_ERROR", message=self._error_message(result), http_status=result.status)
        body = iter(result.body)
        try:
            yield body
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    @staticmethod
    def _error_message(result) -> str:
        raw = b"".join(result.body)
        try:
            data = json.loads(raw)
        except ValueError:
            return raw.decode("utf-8", errors="replace") or f"HTTP {result.status}"
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            return data["error"]
        return f"HTTP {result.status}"

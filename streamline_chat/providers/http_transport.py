"""HTTP 流式传输。

本模块负责：

1. 把 message + 规范化后的 history 组装为 POST JSON 请求体。
2. 调用流式聊天接口并处理网络 / HTTP 状态异常。
3. 把响应体按原始字节块交给 StreamDecoder，取消时立即关闭连接。
"""

from contextlib import contextmanager
from typing import Iterator, List

import httpx

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.domain.exceptions import ParseError, TransportError
from streamline_chat.domain.models import HistoryEntry
from streamline_chat.infrastructure.logging.logger import logger


class HttpChatTransport:
    """基于 httpx 的流式聊天客户端。"""

    name = "http"

    def __init__(self, settings):
        # Settings 里包含 api_base_url、chat_path、超时等配置
        self._settings = settings

    @property
    def url(self) -> str:
        return f"{self._settings.api_base_url}{self._settings.chat_path}"

    @contextmanager
    def open(
        self,
        message: str,
        history: List[HistoryEntry],
        token: CancellationToken,
    ) -> Iterator[Iterator[bytes]]:
        payload = {"message": message, "history": [h.to_dict() for h in history]}
        # 连接阶段使用配置的超时；流式读取不设超时，由调用方取消
        timeout = httpx.Timeout(self._settings.http_timeout, read=None)
        try:
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    self.url,
                    json=payload,
                    headers={
                        "Accept": "text/event-stream",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise TransportError(
                            code="HTTP_ERROR",
                            message=self._error_message(resp),
                            http_status=resp.status_code,
                        )
                    content_type = resp.headers.get("content-type", "")
                    if content_type.startswith("application/json"):
                        # 正常情况下成功响应必须是事件流
                        resp.read()
                        raise ParseError(
                            code="UNEXPECTED_BODY",
                            message=self._error_message(resp),
                            http_status=resp.status_code,
                        )
                    token.on_cancel(resp.close)
                    yield self._iter_bytes(resp, token)
        except httpx.InvalidURL as e:
            raise TransportError(code="INVALID_URL", message=str(e), http_status=400)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(code="NETWORK_ERROR", message=str(e), http_status=503)

    @staticmethod
    def _iter_bytes(resp, token: CancellationToken) -> Iterator[bytes]:
        try:
            for chunk in resp.iter_bytes():
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            # 取消时 resp.close() 会让正在进行的读取失败，这不是传输错误
            token.raise_if_cancelled()
            raise TransportError(code="NETWORK_ERROR", message=str(e), http_status=503)

    @staticmethod
    def _error_message(resp) -> str:
        """从 {"error": "..."} 错误体中取出提示信息，无法解析时退回原始文本。"""

        try:
            data = resp.json()
        except ValueError:
            logger.warning(
                "Unparsable error body",
                extra={"extra": {"status_code": resp.status_code}},
            )
            return resp.text or f"HTTP {resp.status_code}"
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            return data["error"]
        return resp.text or f"HTTP {resp.status_code}"

"""OpenAI 兼容 chat/completions 上游模型适配器。

ChatResponder 只需要一个增量文本序列，本模块负责：

1. 把 system prompt + 规范化后的历史转换为 chat/completions 的 messages。
2. 以 stream=True 调用接口并处理网络 / 限流 / 服务端异常。
3. 从每行 ``data:`` 增量中取出 delta.content 并逐段产出。

Moonshot/Kimi、GLM 等厂商都兼容该格式，切换厂商只需修改 base_url 与模型名。
"""

import json
from typing import Any, Dict, Iterable, List

import httpx

from streamline_chat.domain.exceptions import TransportError, UpstreamError, ValidationError
from streamline_chat.domain.models import HistoryEntry


# 内部 role -> chat/completions role
_ROLE_MAP = {"user": "user", "model": "assistant"}


class CompletionsSession:
    """一次上游会话：固定的 system prompt 与历史，外加本轮用户消息。"""

    def __init__(self, upstream: "CompletionsUpstream", system_prompt: str, history: List[HistoryEntry]):
        self._upstream = upstream
        self._messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        self._messages.extend({"role": _ROLE_MAP[h.role], "content": h.content} for h in history)

    def send_stream(self, text: str) -> Iterable[str]:
        messages = self._messages + [{"role": "user", "content": text}]
        return self._upstream.stream_completion(messages)


class CompletionsUpstream:
    """chat/completions 流式上游。

    - name: 上游名称（供日志/调试使用）。
    - create_session: 创建携带历史的会话。
    """

    name = "completions"

    def __init__(self, settings):
        self._settings = settings

    def create_session(self, system_prompt: str, history: List[HistoryEntry]) -> CompletionsSession:
        if not getattr(self._settings, "upstream_api_key", None):
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="UPSTREAM_API_KEY not set", http_status=500)
        return CompletionsSession(self, system_prompt, history)

    def stream_completion(self, messages: List[Dict[str, Any]]) -> Iterable[str]:
        """执行一次流式调用，逐段 yield 增量文本。"""

        payload = {
            "model": self._settings.upstream_model,
            "messages": messages,
            "stream": True,
        }
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._settings.upstream_base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.upstream_api_key}",
                        "Content-Type": "application/json",
                    },
                ) as resp:
                    if resp.status_code == 401:
                        resp.read()
                        raise UpstreamError(code="INVALID_API_KEY", message="API key not valid", http_status=401)
                    if resp.status_code >= 400:
                        resp.read()
                        raise UpstreamError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    for line in resp.iter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        text = self._delta_text(chunk)
                        if text:
                            yield text
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e), http_status=503)

    @staticmethod
    def _delta_text(data: Dict[str, Any]) -> str:
        """取出第一个 choice 的 delta.content。"""

        for ch in data.get("choices") or []:
            delta = ch.get("delta") or {}
            content = delta.get("content")
            if isinstance(content, str):
                return content
        return ""

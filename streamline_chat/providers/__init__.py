"""传输层与上游模型集成。

该包下的模块负责：
- 定义传输与上游模型的抽象接口 (base)。
- 提供 HTTP 流式传输 (http_transport) 与进程内传输 (local_transport)。
- 提供 OpenAI 兼容的上游模型实现 (completions_upstream)。
"""

from typing import Optional

from streamline_chat.config.settings import settings
from streamline_chat.providers.base import ChatTransport, UpstreamModel
from streamline_chat.providers.completions_upstream import CompletionsUpstream
from streamline_chat.providers.http_transport import HttpChatTransport


def create_upstream() -> Optional[UpstreamModel]:
    """未配置 API 密钥时返回 None，由 ChatResponder 返回 500 提示。"""

    if not settings.upstream_api_key:
        return None
    return CompletionsUpstream(settings)


def create_transport(name: Optional[str] = None) -> ChatTransport:
    """根据名称创建传输实例，默认取配置中的 transport。"""

    transport_name = (name or settings.transport).lower()
    if transport_name == "local":
        # 延迟导入：server 包依赖 providers.base
        from streamline_chat.providers.local_transport import LocalChatTransport
        from streamline_chat.server.responder import ChatResponder

        return LocalChatTransport(ChatResponder(create_upstream(), settings.system_prompt))
    return HttpChatTransport(settings)

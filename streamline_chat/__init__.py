"""Streamline Chat 顶层包。

该包实现与远端文本生成模型的多轮流式对话核心，
包括配置加载、领域模型、流式协议编解码、请求编排与取消、
会话状态协调与本地持久化，以及事件流的服务端生产者。
"""

from streamline_chat.api.service import ChatService, TurnResult

__all__ = ["ChatService", "TurnResult"]
